import os
import unittest
from datetime import date, timedelta
from unittest import mock

from lifecycle_fixtures import ACTOR, MAINTENANCE_PAYLOAD, LifecycleTestCase

from services.field_policy import is_state_pure
from services.history_service import ACTION_FIELD_CHANGE, ACTION_MOVEMENT, ACTION_REPLACEMENT
from services.lifecycle_errors import (
    AlreadyReplaced,
    AwaitingInspectionDecisionRequired,
    IncomingAssetNotEligible,
    InvalidFieldValue,
    InvalidTransitionSource,
    MinimumLengthViolation,
    RequiredFieldMissing,
)
from services.movement_service import apply_transition
from services.replacement_service import find_replacement_links, replace_asset

REASON = "Equipamento apresentou falha no motor"


class ReplacementChainTests(LifecycleTestCase):
    def test_replacement_moves_role_to_incoming(self):
        outgoing = self.rented_asset("GERADOR A")
        incoming = self.register("GERADOR B")
        events_before = self.history_count()

        result = replace_asset(
            self.db,
            outgoing.id,
            incoming.id,
            REASON,
            "deposito_malta",
            ACTOR,
            substitution_date=date(2024, 4, 10),
        )

        a = self.reload(outgoing.id)
        b = self.reload(incoming.id)
        self.assertEqual(b.location_type, "locacao")
        self.assertEqual(b.rental_company, "CONSTRUTORA ALFA")
        self.assertEqual(b.rental_work_site, "OBRA CENTRO")
        self.assertEqual(b.rental_contract_number, "CT-0042")
        self.assertEqual(b.rental_start_date, date(2024, 4, 10))
        self.assertTrue(b.is_new_equipment)
        self.assertEqual(a.location_type, "deposito_malta")
        self.assertIsNone(a.rental_company)
        self.assertIsNone(a.rental_work_site)
        self.assertEqual(a.replaced_by, b.id)
        self.assertEqual(a.replacement_reason, REASON)
        self.assertTrue(a.was_replaced)
        self.assertTrue(is_state_pure(a))
        self.assertTrue(is_state_pure(b))

        replacement_events = self.events(a.id, ACTION_REPLACEMENT)
        self.assertEqual(len(replacement_events), 1)
        self.assertIn(a.asset_code, replacement_events[0].detail)
        self.assertIn(b.asset_code, replacement_events[0].detail)
        self.assertEqual(self.events(b.id, ACTION_REPLACEMENT), [])
        self.assertEqual(self.events(a.id, ACTION_MOVEMENT)[-1].new_value, "deposito_malta")
        self.assertEqual(self.events(b.id, ACTION_MOVEMENT)[-1].new_value, "locacao")
        link_fields = {event.changed_field for event in self.events(a.id, ACTION_FIELD_CHANGE)}
        self.assertTrue({"replaced_by", "replacement_reason", "was_replaced", "substitution_date"} <= link_fields)
        self.assertIn("is_new_equipment", {event.changed_field for event in self.events(b.id, ACTION_FIELD_CHANGE)})
        self.assertEqual(result.history_written, self.history_count() - events_before)

    def test_second_replacement_is_rejected_without_events(self):
        outgoing = self.rented_asset("GERADOR A")
        first = self.register("GERADOR B")
        second = self.register("GERADOR C")
        replace_asset(self.db, outgoing.id, first.id, REASON, "aguardando_laudo", ACTOR)
        self.assertEqual(self.reload(outgoing.id).location_type, "aguardando_laudo")
        events_before = self.history_count()

        with self.assertRaises(AlreadyReplaced):
            replace_asset(self.db, outgoing.id, second.id, REASON, "deposito_malta", ACTOR)

        self.assertEqual(self.history_count(), events_before)
        self.assertEqual(self.reload(second.id).location_type, "deposito_malta")
        self.assertEqual(self.reload(outgoing.id).replaced_by, first.id)

    def test_incoming_must_be_in_warehouse(self):
        outgoing = self.rented_asset("GERADOR A")
        busy = self.register("GERADOR B")
        apply_transition(self.db, busy.id, "em_manutencao", MAINTENANCE_PAYLOAD, ACTOR)
        events_before = self.history_count()

        with self.assertRaises(IncomingAssetNotEligible):
            replace_asset(self.db, outgoing.id, busy.id, REASON, "deposito_malta", ACTOR)
        with self.assertRaises(IncomingAssetNotEligible):
            replace_asset(self.db, outgoing.id, outgoing.id, REASON, "deposito_malta", ACTOR)

        self.assertEqual(self.history_count(), events_before)
        self.assertEqual(self.reload(outgoing.id).location_type, "locacao")

    def test_outgoing_needs_an_active_role(self):
        idle = self.register("GERADOR A")
        spare = self.register("GERADOR B")
        with self.assertRaises(InvalidTransitionSource):
            replace_asset(self.db, idle.id, spare.id, REASON, "deposito_malta", ACTOR)

    def test_gated_outgoing_must_use_the_gate(self):
        outgoing = self.rented_asset("GERADOR A")
        spare = self.register("GERADOR B")
        apply_transition(self.db, outgoing.id, "aguardando_laudo", {}, ACTOR)
        with self.assertRaises(AwaitingInspectionDecisionRequired):
            replace_asset(self.db, outgoing.id, spare.id, REASON, "deposito_malta", ACTOR)
        self.assertEqual(self.reload(spare.id).location_type, "deposito_malta")

    def test_invalid_destination_and_short_reason(self):
        outgoing = self.rented_asset("GERADOR A")
        spare = self.register("GERADOR B")
        with self.assertRaises(InvalidFieldValue):
            replace_asset(self.db, outgoing.id, spare.id, REASON, "locacao", ACTOR)
        with self.assertRaises(MinimumLengthViolation):
            replace_asset(self.db, outgoing.id, spare.id, "falha", "deposito_malta", ACTOR)
        with mock.patch.dict(os.environ, {"REPLACEMENT_REASON_MIN_LENGTH": "30"}):
            with self.assertRaises(MinimumLengthViolation):
                replace_asset(self.db, outgoing.id, spare.id, "Falha no motor", "deposito_malta", ACTOR)
        self.assertIsNone(self.reload(outgoing.id).replaced_by)

    def test_incoming_leg_failure_leaves_outgoing_untouched(self):
        outgoing = self.rented_asset("GERADOR A")
        spare = self.register("GERADOR B", registered_on=date(2024, 6, 1))
        events_before = self.history_count()

        with self.assertRaises(InvalidFieldValue) as ctx:
            replace_asset(
                self.db,
                outgoing.id,
                spare.id,
                REASON,
                "deposito_malta",
                ACTOR,
                substitution_date=date(2024, 5, 1),
            )

        self.assertTrue(str(ctx.exception).startswith(f"[PAT {spare.asset_code}] "))
        a = self.reload(outgoing.id)
        self.assertEqual(a.location_type, "locacao")
        self.assertEqual(a.rental_company, "CONSTRUTORA ALFA")
        self.assertIsNone(a.replaced_by)
        self.assertEqual(self.history_count(), events_before)

    def test_outgoing_leg_failure_rolls_back_incoming_leg(self):
        outgoing = self.rented_asset("GERADOR A")
        spare = self.register("GERADOR B")
        events_before = self.history_count()

        with self.assertRaises(RequiredFieldMissing) as ctx:
            replace_asset(self.db, outgoing.id, spare.id, REASON, "em_manutencao", ACTOR, outgoing_payload={})

        self.assertTrue(str(ctx.exception).startswith(f"[PAT {outgoing.asset_code}] "))
        b = self.reload(spare.id)
        self.assertEqual(b.location_type, "deposito_malta")
        self.assertIsNone(b.rental_company)
        self.assertFalse(b.is_new_equipment)
        self.assertEqual(self.reload(outgoing.id).location_type, "locacao")
        self.assertEqual(self.history_count(), events_before)

    def test_outgoing_to_maintenance_with_payload(self):
        outgoing = self.rented_asset("GERADOR A")
        spare = self.register("GERADOR B")
        replace_asset(
            self.db, outgoing.id, spare.id, REASON, "em_manutencao", ACTOR, outgoing_payload=MAINTENANCE_PAYLOAD
        )
        a = self.reload(outgoing.id)
        self.assertEqual(a.location_type, "em_manutencao")
        self.assertEqual(a.maintenance_company, "OFICINA BETA")
        self.assertEqual(a.replaced_by, spare.id)

    def test_rental_context_overrides_vacated_role(self):
        outgoing = self.rented_asset("GERADOR A")
        spare = self.register("GERADOR B")
        replace_asset(
            self.db,
            outgoing.id,
            spare.id,
            REASON,
            "deposito_malta",
            ACTOR,
            rental_context={"rental_work_site": "OBRA ANEXO", "rental_company": "  "},
        )
        b = self.reload(spare.id)
        self.assertEqual(b.rental_work_site, "OBRA ANEXO")
        self.assertEqual(b.rental_company, "CONSTRUTORA ALFA")

    def test_lapsed_rental_end_date_is_not_inherited(self):
        outgoing = self.rented_asset("GERADOR A", rental_end_date="2024-06-30")
        spare = self.register("GERADOR B")

        replace_asset(self.db, outgoing.id, spare.id, REASON, "deposito_malta", ACTOR)

        b = self.reload(spare.id)
        self.assertEqual(b.location_type, "locacao")
        self.assertEqual(b.rental_start_date, date.today())
        self.assertIsNone(b.rental_end_date)
        self.assertEqual(b.rental_company, "CONSTRUTORA ALFA")
        self.assertEqual(self.reload(outgoing.id).replaced_by, spare.id)

    def test_rental_end_date_taken_from_context(self):
        outgoing = self.rented_asset("GERADOR A", rental_end_date="2024-06-30")
        spare = self.register("GERADOR B")

        replace_asset(
            self.db,
            outgoing.id,
            spare.id,
            REASON,
            "deposito_malta",
            ACTOR,
            rental_context={"rental_end_date": "2024-12-31"},
            substitution_date=date(2024, 4, 10),
        )

        self.assertEqual(self.reload(spare.id).rental_end_date, date(2024, 12, 31))

    def test_maintenance_position_moves_to_incoming(self):
        outgoing = self.register("GERADOR A")
        apply_transition(
            self.db,
            outgoing.id,
            "em_manutencao",
            dict(MAINTENANCE_PAYLOAD, maintenance_departure_date="2024-03-20"),
            ACTOR,
        )
        spare = self.register("GERADOR B")

        replace_asset(
            self.db, outgoing.id, spare.id, REASON, "deposito_malta", ACTOR, substitution_date=date(2024, 4, 10)
        )

        a = self.reload(outgoing.id)
        b = self.reload(spare.id)
        self.assertEqual(b.location_type, "em_manutencao")
        self.assertEqual(b.maintenance_company, "OFICINA BETA")
        self.assertEqual(b.maintenance_work_site, "GALPAO 2")
        self.assertEqual(b.maintenance_description, "Troca de rolamentos")
        self.assertEqual(b.maintenance_arrival_date, date(2024, 4, 10))
        self.assertIsNone(b.maintenance_departure_date)
        self.assertIsNone(b.rental_company)
        self.assertTrue(b.is_new_equipment)
        self.assertEqual(a.location_type, "deposito_malta")
        self.assertIsNone(a.maintenance_company)
        self.assertEqual(a.replaced_by, b.id)
        self.assertTrue(is_state_pure(a))
        self.assertTrue(is_state_pure(b))

    def test_future_substitution_date_is_rejected(self):
        outgoing = self.rented_asset("GERADOR A")
        spare = self.register("GERADOR B")
        events_before = self.history_count()

        with self.assertRaises(InvalidFieldValue) as ctx:
            replace_asset(
                self.db,
                outgoing.id,
                spare.id,
                REASON,
                "deposito_malta",
                ACTOR,
                substitution_date=date.today() + timedelta(days=400),
            )

        self.assertEqual(ctx.exception.field, "substitution_date")
        self.assertEqual(self.history_count(), events_before)
        self.assertEqual(self.reload(spare.id).location_type, "deposito_malta")
        self.assertIsNone(self.reload(outgoing.id).substitution_date)

        replace_asset(self.db, outgoing.id, spare.id, REASON, "deposito_malta", ACTOR, substitution_date=date.today())
        self.assertEqual(self.reload(outgoing.id).substitution_date, date.today())

    def test_find_replacement_links_both_directions(self):
        outgoing = self.rented_asset("GERADOR A")
        spare = self.register("GERADOR B")
        replace_asset(self.db, outgoing.id, spare.id, REASON, "deposito_malta", ACTOR)

        forward = find_replacement_links(self.db, outgoing.id)
        self.assertEqual(forward["replaced_by"].id, spare.id)
        self.assertEqual(forward["replaces"], [])

        reverse = find_replacement_links(self.db, spare.id)
        self.assertIsNone(reverse["replaced_by"])
        self.assertEqual([asset.id for asset in reverse["replaces"]], [outgoing.id])


if __name__ == "__main__":
    unittest.main()
