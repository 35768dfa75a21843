import unittest

from sqlalchemy import text

from lifecycle_fixtures import ACTOR, LifecycleTestCase

from scripts.db_overview import _run_column_checks, _run_existence_checks, _run_integrity_checks
from services.movement_service import apply_transition
from services.replacement_service import replace_asset

REASON = "Equipamento apresentou falha no motor"


class DbOverviewTests(LifecycleTestCase):
    def _failed(self, checks):
        return {check.name: check.detail for check in checks if not check.ok}

    def test_schema_checks_pass_on_fresh_schema(self):
        self.db.close()
        self.assertEqual(self._failed(_run_existence_checks(self.engine)), {})
        self.assertEqual(self._failed(_run_column_checks(self.engine)), {})

    def test_substitute_reused_after_returning_to_warehouse(self):
        first = self.rented_asset("GERADOR A")
        second = self.rented_asset("GERADOR B")
        spare = self.register("GERADOR RESERVA")

        replace_asset(self.db, first.id, spare.id, REASON, "deposito_malta", ACTOR)
        apply_transition(self.db, spare.id, "deposito_malta", {}, ACTOR)
        replace_asset(self.db, second.id, spare.id, REASON, "deposito_malta", ACTOR)
        self.db.close()

        self.assertEqual(self._failed(_run_integrity_checks(self.engine, 5)), {})

    def test_broken_replacement_link_is_reported(self):
        outgoing = self.rented_asset("GERADOR A")
        spare = self.register("GERADOR RESERVA")
        replace_asset(self.db, outgoing.id, spare.id, REASON, "deposito_malta", ACTOR)
        self.db.execute(text("UPDATE assets SET replacement_reason = NULL WHERE id = :id"), {"id": outgoing.id})
        self.db.commit()
        self.db.close()

        failed = self._failed(_run_integrity_checks(self.engine, 5))
        self.assertEqual(failed, {"assets:replaced_without_reason": "count=1"})


if __name__ == "__main__":
    unittest.main()
