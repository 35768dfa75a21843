import os
import unittest
from datetime import date, datetime
from unittest import mock

from lifecycle_fixtures import ACTOR, MAINTENANCE_PAYLOAD, RENTAL_PAYLOAD, LifecycleTestCase

from models.asset_models import Asset
from services.field_policy import LocationType, is_state_pure
from services.history_service import ACTION_MOVEMENT, ACTION_REPLACEMENT
from services.inspection_service import (
    approve_inspection,
    inspection_deadline_status,
    list_awaiting_inspection,
    replace_from_inspection,
)
from services.lifecycle_errors import (
    InvalidFieldValue,
    InvalidTransitionSource,
    MinimumLengthViolation,
    RequiredFieldMissing,
)
from services.movement_service import apply_transition


class PostInspectionGateTests(LifecycleTestCase):
    def gated_asset(self, name="GERADOR 100KVA"):
        asset = self.rented_asset(name)
        apply_transition(self.db, asset.id, "aguardando_laudo", {"inspection_notes": "Vazamento de oleo"}, ACTOR)
        return asset

    def test_approve_returns_asset_to_warehouse(self):
        asset = self.gated_asset()
        result = approve_inspection(self.db, asset.id, ACTOR, notes="Laudo sem avarias")

        self.assertEqual(result.from_state, LocationType.AWAITING_REPORT)
        self.assertEqual(result.to_state, LocationType.WAREHOUSE)
        stored = self.reload(asset.id)
        self.assertEqual(stored.location_type, "deposito_malta")
        self.assertIsNone(stored.inspection_start_date)
        self.assertIsNone(stored.inspection_notes)
        self.assertTrue(is_state_pure(stored))

        movement = self.events(asset.id, ACTION_MOVEMENT)[-1]
        self.assertEqual((movement.old_value, movement.new_value), ("aguardando_laudo", "deposito_malta"))
        self.assertIn("Inspection approved: Laudo sem avarias", movement.detail)

    def test_approve_can_send_asset_back_to_work(self):
        asset = self.gated_asset()
        payload = dict(RENTAL_PAYLOAD, rental_work_site="OBRA SUL", rental_start_date="2024-05-01")
        approve_inspection(self.db, asset.id, ACTOR, target_state="locacao", payload=payload)

        stored = self.reload(asset.id)
        self.assertEqual(stored.location_type, "locacao")
        self.assertEqual(stored.rental_work_site, "OBRA SUL")

    def test_approve_to_maintenance_requires_maintenance_fields(self):
        asset = self.gated_asset()
        with self.assertRaises(RequiredFieldMissing) as ctx:
            approve_inspection(self.db, asset.id, ACTOR, target_state="em_manutencao", payload={})
        self.assertEqual(ctx.exception.http_status, 422)
        self.assertEqual(self.reload(asset.id).location_type, "aguardando_laudo")

        approve_inspection(self.db, asset.id, ACTOR, target_state="em_manutencao", payload=MAINTENANCE_PAYLOAD)
        self.assertEqual(self.reload(asset.id).location_type, "em_manutencao")

    def test_approve_cannot_keep_asset_gated(self):
        asset = self.gated_asset()
        with self.assertRaises(InvalidFieldValue):
            approve_inspection(self.db, asset.id, ACTOR, target_state="aguardando_laudo")

    def test_decisions_only_apply_to_gated_assets(self):
        asset = self.rented_asset()
        spare = self.register("GERADOR RESERVA")
        with self.assertRaises(InvalidTransitionSource):
            approve_inspection(self.db, asset.id, ACTOR)
        with self.assertRaises(InvalidTransitionSource):
            replace_from_inspection(self.db, asset.id, spare.id, "Equipamento com defeito grave", ACTOR)
        self.assertEqual(self.reload(spare.id).location_type, "deposito_malta")

    def test_replace_reason_minimum_length(self):
        asset = self.gated_asset()
        spare = self.register("GERADOR RESERVA")
        events_before = self.history_count()
        with self.assertRaises(MinimumLengthViolation):
            replace_from_inspection(self.db, asset.id, spare.id, "quebrado", ACTOR)
        self.assertEqual(self.history_count(), events_before)

        with mock.patch.dict(os.environ, {"REPLACEMENT_REASON_MIN_LENGTH": "4"}):
            replace_from_inspection(self.db, asset.id, spare.id, "quebrado", ACTOR)
        self.assertEqual(self.reload(asset.id).replaced_by, spare.id)

    def test_replace_hands_archived_role_to_incoming(self):
        asset = self.gated_asset()
        spare = self.register("GERADOR RESERVA")

        result = replace_from_inspection(
            self.db,
            asset.id,
            spare.id,
            "Motor condenado pelo laudo tecnico",
            ACTOR,
            substitution_date=date(2024, 5, 2),
        )

        outgoing = self.reload(asset.id)
        incoming = self.reload(spare.id)
        self.assertEqual(result.substitution_date, date(2024, 5, 2))
        self.assertEqual(outgoing.location_type, "deposito_malta")
        self.assertIsNone(outgoing.inspection_start_date)
        self.assertEqual(outgoing.replaced_by, spare.id)
        self.assertTrue(outgoing.was_replaced)
        self.assertEqual(outgoing.substitution_date, date(2024, 5, 2))
        self.assertEqual(incoming.location_type, "locacao")
        self.assertEqual(incoming.rental_company, "CONSTRUTORA ALFA")
        self.assertEqual(incoming.rental_work_site, "OBRA CENTRO")
        self.assertEqual(incoming.rental_contract_number, "CT-0042")
        self.assertEqual(incoming.rental_start_date, date(2024, 5, 2))
        self.assertTrue(incoming.is_new_equipment)
        self.assertEqual(len(self.events(asset.id, ACTION_REPLACEMENT)), 1)

    def test_replace_cannot_leave_asset_gated(self):
        asset = self.gated_asset()
        spare = self.register("GERADOR RESERVA")
        with self.assertRaises(InvalidFieldValue):
            replace_from_inspection(
                self.db, asset.id, spare.id, "Motor condenado pelo laudo", ACTOR, destination="aguardando_laudo"
            )

    def test_deadline_status(self):
        asset = Asset(
            asset_code="000010",
            location_type=LocationType.AWAITING_REPORT.value,
            inspection_start_date=datetime(2024, 5, 1, 8, 0),
        )
        on_time = inspection_deadline_status(asset, today=date(2024, 5, 6))
        self.assertEqual(on_time.days_waiting, 5)
        self.assertEqual(on_time.due_on, date(2024, 5, 6))
        self.assertFalse(on_time.overdue)

        late = inspection_deadline_status(asset, today=date(2024, 5, 7))
        self.assertEqual(late.days_waiting, 6)
        self.assertTrue(late.overdue)

        with mock.patch.dict(os.environ, {"INSPECTION_DEADLINE_DAYS": "10"}):
            self.assertFalse(inspection_deadline_status(asset, today=date(2024, 5, 7)).overdue)

    def test_deadline_status_requires_gated_asset(self):
        with self.assertRaises(InvalidTransitionSource):
            inspection_deadline_status(Asset(asset_code="000011", location_type="deposito_malta"))

    def test_list_awaiting_inspection(self):
        gated = self.gated_asset()
        self.rented_asset("COMPRESSOR")
        rows = list_awaiting_inspection(self.db, today=date.today())
        self.assertEqual([asset.id for asset, _ in rows], [gated.id])
        self.assertEqual(rows[0][1].days_waiting, 0)
        self.assertFalse(rows[0][1].overdue)


if __name__ == "__main__":
    unittest.main()
