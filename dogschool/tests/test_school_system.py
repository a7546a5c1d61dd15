import datetime as dt
import unittest

from dogschool.training.database import SCHEMA_VERSION, get_metadata
from dogschool.training.store import RowStore, as_list, as_single
from dogschool.training.system import FetchError, SchoolSystem, ValidationError


class SchoolSystemTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.system = SchoolSystem.open()
        self.city = self.system.create_city(name="Barcelona")
        self.trainer = self.system.create_profile(full_name="Pablo Trainer")
        self.other_trainer = self.system.create_profile(full_name="Lupe Trainer")
        self.client = self.system.register_client(
            name="Jordi Puig",
            dog_breed="Border Collie",
            city_id=self.city["id"],
        )

    def tearDown(self) -> None:
        self.system.close()

    def schedule_program(self, client_id: int, first_day: dt.date) -> list[dict]:
        return [
            self.system.schedule_session(
                client_id=client_id,
                date=first_day + dt.timedelta(weeks=index),
                time="10:00",
            )
            for index in range(8)
        ]

    def test_schema_version_recorded(self) -> None:
        self.assertEqual(get_metadata(self.system.store.conn, "schema_version"), str(SCHEMA_VERSION))

    def test_approved_evaluation_activates_client(self) -> None:
        self.assertEqual(self.client["status"], "evaluated")
        self.system.record_evaluation(
            client_id=self.client["id"],
            adiestrador_id=self.trainer["id"],
            result="approved",
        )
        client = self.system.get_client(self.client["id"])
        self.assertEqual(client["status"], "active")
        self.assertIsNotNone(client["evaluation_done_at"])
        self.assertEqual(len(client["evaluations"]), 1)
        active = self.system.active_clients(city_id=self.city["id"])
        self.assertEqual([row["id"] for row in active], [self.client["id"]])

    def test_rejected_evaluation_keeps_status(self) -> None:
        self.system.record_evaluation(
            client_id=self.client["id"],
            adiestrador_id=self.trainer["id"],
            result="rejected",
        )
        self.assertEqual(self.system.get_client(self.client["id"])["status"], "evaluated")
        with self.assertRaises(ValidationError):
            self.system.record_evaluation(
                client_id=self.client["id"],
                adiestrador_id=self.trainer["id"],
                result="maybe",
            )

    def test_schedule_assigns_lowest_free_number(self) -> None:
        day = dt.date(2025, 3, 3)
        self.system.schedule_session(client_id=self.client["id"], date=day, session_number=2)
        first = self.system.schedule_session(client_id=self.client["id"], date=day)
        third = self.system.schedule_session(client_id=self.client["id"], date="2025-03-10", time="18:30")
        self.assertEqual(first["session_number"], 1)
        self.assertEqual(third["session_number"], 3)
        self.assertEqual(third["date"], "2025-03-10T18:30:00")
        self.assertEqual(third["completed"], 0)
        self.assertEqual(self.system.next_session_number(self.client["id"]), 4)

    def test_schedule_rejects_duplicates_and_bad_input(self) -> None:
        self.system.schedule_session(client_id=self.client["id"], date="2025-03-03", session_number=1)
        with self.assertRaises(ValidationError):
            self.system.schedule_session(client_id=self.client["id"], date="2025-03-04", session_number=1)
        with self.assertRaises(ValidationError):
            self.system.schedule_session(client_id=self.client["id"], date="03/04/2025")
        with self.assertRaises(ValidationError):
            self.system.schedule_session(client_id=self.client["id"], date="2025-03-04", time="25:99")
        with self.assertRaises(ValidationError):
            self.system.schedule_session(client_id=self.client["id"], date="2025-03-04", session_number=9)
        with self.assertRaises(ValidationError):
            self.system.schedule_session(client_id=9999, date="2025-03-04")
        self.assertEqual(self.system.existing_session_numbers(self.client["id"]), [1])

    def test_full_program_cannot_take_more_sessions(self) -> None:
        self.schedule_program(self.client["id"], dt.date(2025, 1, 6))
        self.assertIsNone(self.system.next_session_number(self.client["id"]))
        with self.assertRaises(ValidationError):
            self.system.schedule_session(client_id=self.client["id"], date="2025-04-01")

    def test_completing_session_eight_finishes_client_out_of_order(self) -> None:
        sessions = self.schedule_program(self.client["id"], dt.date(2025, 1, 6))
        self.system.mark_session_completed(sessions[0]["id"])
        self.assertNotEqual(self.system.get_client(self.client["id"])["status"], "finished")
        completed = self.system.mark_session_completed(sessions[7]["id"])
        self.assertEqual(completed["completed"], 1)
        client = self.system.get_client(self.client["id"])
        self.assertEqual(client["status"], "finished")
        self.assertEqual(self.system.client_progress(self.client["id"]), (2, 8))

    def test_mark_unknown_session(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.mark_session_completed(12345)

    def test_upcoming_sessions_embed_client(self) -> None:
        today = dt.date(2025, 5, 10)
        self.system.schedule_session(client_id=self.client["id"], date="2025-05-01")
        self.system.schedule_session(client_id=self.client["id"], date="2025-05-20")
        self.system.schedule_session(client_id=self.client["id"], date="2025-05-10", time="09:00")
        elsewhere = self.system.register_client(name="Ana", city_id=self.system.create_city(name="Badalona")["id"])
        self.system.schedule_session(client_id=elsewhere["id"], date="2025-05-11")
        upcoming = self.system.upcoming_sessions(today=today, city_id=self.city["id"])
        self.assertEqual([row["date"][:10] for row in upcoming], ["2025-05-10", "2025-05-20"])
        self.assertEqual(upcoming[0]["client"]["name"], "Jordi Puig")
        self.assertEqual(len(self.system.upcoming_sessions(today=today)), 3)

    def test_list_clients_filters(self) -> None:
        self.system.register_client(name="Marta Soler", status="active")
        self.assertEqual([c["name"] for c in self.system.list_clients(search="puig")], ["Jordi Puig"])
        self.assertEqual([c["name"] for c in self.system.list_clients(status="active")], ["Marta Soler"])
        with self.assertRaises(ValidationError):
            self.system.register_client(name="  ")
        with self.assertRaises(ValidationError):
            self.system.register_client(name="X", status="archived")

    def test_trainer_statement_and_settlement(self) -> None:
        self.system.record_evaluation(
            client_id=self.client["id"],
            adiestrador_id=self.trainer["id"],
            result="approved",
            created_at="2025-01-02 10:00:00",
        )
        other = self.system.register_client(name="Luis Vidal")
        self.system.record_evaluation(
            client_id=other["id"],
            adiestrador_id=self.trainer["id"],
            result="rejected",
            created_at="2025-01-20 10:00:00",
        )
        sessions = self.schedule_program(self.client["id"], dt.date(2025, 1, 6))
        for session in sessions[:5]:
            self.system.mark_session_completed(session["id"])

        statement = self.system.trainer_statement(adiestrador_id=self.trainer["id"], month="2025-01")
        self.assertEqual(statement.trainer_name, "Pablo Trainer")
        self.assertEqual(statement.completed_blocks, 1)
        self.assertEqual(statement.evaluations, 2)
        self.assertAlmostEqual(statement.totals.base_reducida, 120 / 1.21 - 40, places=6)
        self.assertEqual(statement.in_progress[0].sessions_completed, 1)

        settlement = self.system.settle_trainer(adiestrador_id=self.trainer["id"], month="2025-01")
        self.assertEqual(settlement["status"], "paid")
        self.assertAlmostEqual(settlement["total_amount"], round((120 / 1.21 - 40) * 1.21, 2))
        paid_sessions = [
            row["session_number"]
            for row in self.system.store.select("sessions", filters={"paid_to_trainer": 1})
        ]
        self.assertEqual(sorted(paid_sessions), [1, 2, 3, 4])
        self.assertEqual(
            self.system.store.count("evaluations", filters={"trainer_settlement_id": settlement["id"]}),
            2,
        )

        # Later changes do not alter the stored figures shown for the month.
        self.system.mark_session_completed(sessions[5]["id"])
        self.system.store.update("sessions", {"date": "2025-01-30T10:00:00"}, filters={"id": sessions[7]["id"]})
        self.system.store.update("sessions", {"date": "2025-01-29T10:00:00"}, filters={"id": sessions[6]["id"]})
        self.system.store.update("sessions", {"date": "2025-01-28T10:00:00"}, filters={"id": sessions[5]["id"]})
        self.system.mark_session_completed(sessions[6]["id"])
        self.system.mark_session_completed(sessions[7]["id"])
        refreshed = self.system.trainer_statement(adiestrador_id=self.trainer["id"], month="2025-01")
        self.assertEqual(refreshed.completed_blocks, 2)
        self.assertEqual(refreshed.totals.total, settlement["total_amount"])
        self.assertTrue(refreshed.has_drift)
        self.assertEqual(refreshed.status, "paid")

    def test_settle_existing_pending_settlement(self) -> None:
        self.system.record_evaluation(
            client_id=self.client["id"],
            adiestrador_id=self.trainer["id"],
            result="approved",
            created_at="2025-02-01 10:00:00",
        )
        sessions = self.schedule_program(self.client["id"], dt.date(2025, 2, 3))
        for session in sessions[:4]:
            self.system.mark_session_completed(session["id"])

        pending = self.system.settle_trainer(
            adiestrador_id=self.trainer["id"], month="2025-02", status="pending"
        )
        self.assertEqual(pending["status"], "pending")
        self.assertAlmostEqual(pending["total_amount"], 95.8)
        self.assertEqual(self.system.store.count("sessions", filters={"paid_to_trainer": 1}), 0)
        self.assertEqual(self.system.store.count("evaluations", filters={"paid_to_trainer": 1}), 0)
        self.assertEqual(
            self.system.store.count("sessions", filters={"trainer_settlement_id": ("is_not_null", None)}),
            0,
        )

        paid = self.system.settle_trainer(adiestrador_id=self.trainer["id"], month="2025-02")
        self.assertEqual(paid["id"], pending["id"])
        self.assertEqual(paid["status"], "paid")
        self.assertEqual(
            self.system.store.count("sessions", filters={"trainer_settlement_id": paid["id"]}),
            4,
        )
        self.assertEqual(self.system.store.count("evaluations", filters={"paid_to_trainer": 1}), 1)
        with self.assertRaises(ValidationError):
            self.system.settle_trainer(adiestrador_id=self.trainer["id"], month="2025-02", status="void")

    def test_settling_deductions_only_month_has_no_drift(self) -> None:
        self.system.record_evaluation(
            client_id=self.client["id"],
            adiestrador_id=self.trainer["id"],
            result="approved",
            created_at="2025-01-02 10:00:00",
        )
        settlement = self.system.settle_trainer(adiestrador_id=self.trainer["id"], month="2025-01")
        self.assertEqual(settlement["total_amount"], 0)
        self.assertEqual(settlement["evaluations_deducted_amount"], 20)
        statement = self.system.trainer_statement(adiestrador_id=self.trainer["id"], month="2025-01")
        self.assertEqual(statement.totals.base_reducida, 0)
        self.assertFalse(statement.has_drift)

    def test_trainer_performance(self) -> None:
        self.system.record_evaluation(
            client_id=self.client["id"],
            adiestrador_id=self.trainer["id"],
            result="approved",
            created_at="2025-01-02 10:00:00",
        )
        sessions = self.schedule_program(self.client["id"], dt.date(2025, 1, 6))
        for session in sessions[:3]:
            self.system.mark_session_completed(session["id"])

        marta = self.system.register_client(name="Marta Soler", city_id=self.city["id"])
        self.system.record_evaluation(
            client_id=marta["id"],
            adiestrador_id=self.trainer["id"],
            result="rejected",
            created_at="2025-01-10 09:00:00",
        )
        self.system.schedule_session(client_id=marta["id"], date="2025-01-20")

        badalona = self.system.create_city(name="Badalona")
        ana = self.system.register_client(name="Ana", city_id=badalona["id"])
        self.system.record_evaluation(
            client_id=ana["id"],
            adiestrador_id=self.trainer["id"],
            result="approved",
            created_at="2025-02-01 10:00:00",
        )

        rows = self.system.trainer_performance()
        self.assertEqual([row["name"] for row in rows], ["Lupe Trainer", "Pablo Trainer"])
        lupe, pablo = rows
        self.assertEqual(lupe["total_evaluations"], 0)
        self.assertEqual(lupe["success_ratio"], 0)
        self.assertEqual(lupe["avg_days_to_first_session"], 0)
        self.assertEqual(pablo["total_evaluations"], 3)
        self.assertEqual(pablo["approved_evaluations"], 2)
        self.assertAlmostEqual(pablo["success_ratio"], 200 / 3)
        self.assertEqual(pablo["completed_sessions"], 3)
        self.assertEqual(pablo["active_clients"], 2)
        # Jordi waited 4 days, Marta 10
        self.assertEqual(pablo["avg_days_to_first_session"], 7)

        by_city = self.system.trainer_performance(city_id=self.city["id"])[1]
        self.assertEqual(by_city["total_evaluations"], 2)
        self.assertEqual(by_city["success_ratio"], 50)
        self.assertEqual(by_city["active_clients"], 1)

        early = self.system.trainer_performance(date_from="2025-01-01", date_to=dt.date(2025, 1, 15))[1]
        self.assertEqual(early["total_evaluations"], 2)
        self.assertEqual(early["approved_evaluations"], 1)
        self.assertEqual(early["completed_sessions"], 2)

        with self.assertRaises(ValidationError):
            self.system.trainer_performance(date_from="soon")
        with self.assertRaises(ValidationError):
            self.system.trainer_performance(date_from="2025-02-01", date_to="2025-01-01")

    def test_trainer_overview(self) -> None:
        self.system.record_evaluation(
            client_id=self.client["id"],
            adiestrador_id=self.other_trainer["id"],
            result="approved",
            created_at="2025-01-03 10:00:00",
        )
        sessions = self.schedule_program(self.client["id"], dt.date(2025, 1, 6))
        for session in sessions[:4]:
            self.system.mark_session_completed(session["id"])
        overview = self.system.trainer_overview(month="2025-01")
        by_name = {row.trainer_name: row for row in overview["statements"]}
        self.assertEqual(list(by_name), ["Lupe Trainer", "Pablo Trainer"])
        self.assertEqual(by_name["Lupe Trainer"].completed_blocks, 1)
        self.assertEqual(by_name["Pablo Trainer"].totals.total, 0)
        self.assertEqual(overview["pending_count"], 1)
        self.assertAlmostEqual(overview["total"], (120 / 1.21 - 20) * 1.21, places=6)
        with self.assertRaises(ValidationError):
            self.system.trainer_overview(month="2025-1")


class FailingStore:
    def select(self, table, **kwargs):
        raise FetchError(f"Could not query {table}")

    def select_one(self, table, **kwargs):
        raise FetchError(f"Could not query {table}")


class FetchFailureTestCase(unittest.TestCase):
    def test_fetch_errors_abort_statement(self) -> None:
        system = SchoolSystem(FailingStore())
        with self.assertRaises(FetchError):
            system.trainer_statement(adiestrador_id=1, month="2025-01")

    def test_sqlite_errors_become_fetch_errors(self) -> None:
        store = RowStore.open()
        store.close()
        with self.assertLogs("dogschool.training.store", level="ERROR"):
            with self.assertRaises(FetchError):
                store.select("clients")


class NormalizationTestCase(unittest.TestCase):
    def test_embedded_relations(self) -> None:
        self.assertEqual(as_list(None), [])
        self.assertEqual(as_list({"id": 1}), [{"id": 1}])
        self.assertEqual(as_list(({"id": 1}, {"id": 2})), [{"id": 1}, {"id": 2}])
        self.assertIsNone(as_single([]))
        self.assertEqual(as_single([{"id": 3}, {"id": 4}]), {"id": 3})
        self.assertEqual(as_single({"id": 5}), {"id": 5})


if __name__ == "__main__":
    unittest.main()
