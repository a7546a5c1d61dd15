"""Core orchestration logic for the dog-training school back office."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any

from .dates import combine_date_time, parse_month, parse_timestamp
from .errors import ComputationError, FetchError, ValidationError
from .ledger import (
    CLIENT_STATUSES,
    STATUS_ACTIVE,
    STATUS_EVALUATED,
    STATUS_FINISHED,
    TOTAL_SESSIONS,
    completes_program,
    next_available_session_number,
    progress,
    validate_session_number,
)
from .performance import trainer_performance
from .settlement import (
    EVALUATION_RESULTS,
    RESULT_APPROVED,
    SETTLEMENT_PAID,
    SETTLEMENT_STATUSES,
    TrainerStatement,
    build_statement,
)
from .store import RowStore, as_list, as_single

logger = logging.getLogger(__name__)

ROLE_TRAINER = "adiestrador"
ROLES = ("admin", ROLE_TRAINER, "comercial")

CLIENT_EMBEDS = {
    "sessions": ("sessions", "client_id"),
    "evaluations": ("evaluations", "client_id"),
}

__all__ = [
    "ComputationError",
    "FetchError",
    "SchoolSystem",
    "ValidationError",
]


class SchoolSystem:
    """High level façade that exposes application level behaviours.

    The row store handle is injected so tests can substitute a fake one.
    """

    def __init__(self, store: RowStore) -> None:
        self.store = store

    @classmethod
    def open(cls, db_path: str = ":memory:") -> "SchoolSystem":
        return cls(RowStore.open(db_path))

    # ------------------------------------------------------------------
    # Staff & cities
    # ------------------------------------------------------------------
    def create_profile(self, *, full_name: str, role: str = ROLE_TRAINER, email: str | None = None) -> dict:
        if not (full_name or "").strip():
            raise ValidationError("Full name is required")
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {role}")
        return self.store.insert(
            "profiles",
            {"full_name": full_name.strip(), "role": role, "email": email.lower() if email else None},
        )

    def get_profile(self, profile_id: int) -> dict:
        row = self.store.select_one("profiles", filters={"id": profile_id})
        if not row:
            raise ValidationError("Profile not found")
        return row

    def list_trainers(self) -> list[dict]:
        return self.store.select("profiles", filters={"role": ROLE_TRAINER}, order_by="full_name")

    def create_city(self, *, name: str) -> dict:
        if not (name or "").strip():
            raise ValidationError("City name is required")
        return self.store.insert("cities", {"name": name.strip()})

    def list_cities(self) -> list[dict]:
        return self.store.select("cities", order_by="name")

    # ------------------------------------------------------------------
    # Clients & evaluations
    # ------------------------------------------------------------------
    def register_client(
        self,
        *,
        name: str,
        dog_breed: str | None = None,
        city_id: int | None = None,
        address: str | None = None,
        phone: str | None = None,
        status: str = STATUS_EVALUATED,
    ) -> dict:
        if not (name or "").strip():
            raise ValidationError("Client name is required")
        if status not in CLIENT_STATUSES:
            raise ValidationError(f"Unknown client status: {status}")
        client = self.store.insert(
            "clients",
            {
                "name": name.strip(),
                "dog_breed": dog_breed,
                "city_id": city_id,
                "address": address,
                "phone": phone,
                "status": status,
            },
        )
        return self.get_client(client["id"])

    def get_client(self, client_id: int) -> dict:
        rows = self.store.select("clients", filters={"id": client_id}, embed=CLIENT_EMBEDS)
        if not rows:
            raise ValidationError("Client not found")
        return self._normalize_client(rows[0])

    def list_clients(
        self,
        *,
        status: str | None = None,
        city_id: int | None = None,
        search: str | None = None,
    ) -> list[dict]:
        filters: dict[str, Any] = {}
        if status:
            filters["status"] = status
        if city_id:
            filters["city_id"] = city_id
        if search:
            filters["name"] = ("like", f"%{search.strip()}%")
        rows = self.store.select("clients", filters=filters, order_by="name", embed=CLIENT_EMBEDS)
        return [self._normalize_client(row) for row in rows]

    def _normalize_client(self, row: dict) -> dict:
        row["sessions"] = sorted(as_list(row.get("sessions")), key=lambda s: s["session_number"])
        row["evaluations"] = as_list(row.get("evaluations"))
        row["completed_sessions"], row["total_sessions"] = progress(row)
        return row

    def record_evaluation(
        self,
        *,
        client_id: int,
        adiestrador_id: int,
        result: str,
        comments: str | None = None,
        created_at: str | None = None,
    ) -> dict:
        if result not in EVALUATION_RESULTS:
            raise ValidationError(f"Unknown evaluation result: {result}")
        client = self.get_client(client_id)
        self.get_profile(adiestrador_id)
        values: dict[str, Any] = {
            "client_id": client_id,
            "adiestrador_id": adiestrador_id,
            "city_id": client["city_id"],
            "result": result,
            "comments": comments,
        }
        if created_at:
            values["created_at"] = created_at
        evaluation = self.store.insert("evaluations", values)
        update: dict[str, Any] = {"evaluation_done_at": evaluation["created_at"]}
        if result == RESULT_APPROVED:
            update["status"] = STATUS_ACTIVE
        self.store.update("clients", update, filters={"id": client_id})
        return evaluation

    def list_evaluations(self, *, adiestrador_id: int | None = None) -> list[dict]:
        filters = {"adiestrador_id": adiestrador_id} if adiestrador_id else None
        rows = self.store.select(
            "evaluations",
            filters=filters,
            order_by="created_at",
            descending=True,
            embed={"client": ("clients", "client_id->")},
        )
        for row in rows:
            row["client"] = as_single(row.get("client"))
        return rows

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def get_session(self, session_id: int) -> dict:
        row = self.store.select_one("sessions", filters={"id": session_id})
        if not row:
            raise ValidationError("Session not found")
        return row

    def existing_session_numbers(self, client_id: int) -> list[int]:
        rows = self.store.select("sessions", filters={"client_id": client_id}, order_by="session_number")
        return [row["session_number"] for row in rows]

    def next_session_number(self, client_id: int) -> int | None:
        return next_available_session_number(self.existing_session_numbers(client_id))

    def schedule_session(
        self,
        *,
        client_id: int,
        date: str | dt.date,
        time: str | dt.time = "10:00",
        session_number: int | str | None = None,
        comments: str | None = None,
    ) -> dict:
        self.get_client(client_id)
        existing = self.existing_session_numbers(client_id)
        if session_number is None:
            session_number = next_available_session_number(existing)
            if session_number is None:
                raise ValidationError(f"All {TOTAL_SESSIONS} sessions are already scheduled")
        number = validate_session_number(session_number, existing)
        when = combine_date_time(date, time)
        session = self.store.insert(
            "sessions",
            {
                "client_id": client_id,
                "session_number": number,
                "date": when.isoformat(timespec="seconds"),
                "comments": comments or None,
                "completed": 0,
            },
        )
        logger.info("Scheduled session %s for client %s on %s", number, client_id, session["date"])
        return session

    def mark_session_completed(self, session_id: int) -> dict:
        session = self.get_session(session_id)
        self.store.update("sessions", {"completed": 1}, filters={"id": session_id})
        if completes_program(session):
            self.store.update("clients", {"status": STATUS_FINISHED}, filters={"id": session["client_id"]})
            logger.info("Client %s finished the program", session["client_id"])
        return self.get_session(session_id)

    def client_progress(self, client_id: int) -> tuple[int, int]:
        return progress(self.get_client(client_id))

    def active_clients(self, *, city_id: int | None = None) -> list[dict]:
        return self.list_clients(status=STATUS_ACTIVE, city_id=city_id)

    def upcoming_sessions(
        self,
        *,
        today: dt.date | None = None,
        city_id: int | None = None,
        limit: int = 10,
    ) -> list[dict]:
        today = today or dt.date.today()
        filters: dict[str, Any] = {"date": ("gte", today.isoformat())}
        if city_id:
            client_ids = [row["id"] for row in self.store.select("clients", filters={"city_id": city_id})]
            filters["client_id"] = ("in", client_ids)
        rows = self.store.select(
            "sessions",
            filters=filters,
            order_by="date",
            limit=limit,
            embed={"client": ("clients", "client_id->")},
        )
        for row in rows:
            row["client"] = as_single(row.get("client"))
        return rows

    # ------------------------------------------------------------------
    # Trainer billing
    # ------------------------------------------------------------------
    def get_settlement(self, *, adiestrador_id: int, month: str) -> dict | None:
        return self.store.select_one(
            "trainer_settlements",
            filters={"adiestrador_id": adiestrador_id, "month": month},
        )

    def trainer_statement(self, *, adiestrador_id: int, month: str) -> TrainerStatement:
        parse_month(month)
        trainer = self.get_profile(adiestrador_id)
        settlement = self.get_settlement(adiestrador_id=adiestrador_id, month=month)
        evaluations = self.list_evaluations(adiestrador_id=adiestrador_id)
        clients = self.list_clients()
        statement = build_statement(
            trainer_id=adiestrador_id,
            month=month,
            evaluations=evaluations,
            clients=clients,
            settlement=settlement,
        )
        statement.trainer_name = trainer["full_name"]
        return statement

    def trainer_overview(self, *, month: str) -> dict:
        parse_month(month)
        settlements = {
            row["adiestrador_id"]: row
            for row in self.store.select("trainer_settlements", filters={"month": month})
        }
        evaluations = self.list_evaluations()
        clients = self.list_clients()
        statements = []
        for trainer in self.list_trainers():
            statement = build_statement(
                trainer_id=trainer["id"],
                month=month,
                evaluations=evaluations,
                clients=clients,
                settlement=settlements.get(trainer["id"]),
            )
            statement.trainer_name = trainer["full_name"]
            statements.append(statement)
        return {
            "month": month,
            "statements": statements,
            "total": sum(statement.totals.total for statement in statements),
            "pending_count": sum(
                1
                for statement in statements
                if statement.status != SETTLEMENT_PAID and statement.totals.total > 0
            ),
        }

    def trainer_performance(
        self,
        *,
        city_id: int | None = None,
        date_from: str | dt.date | None = None,
        date_to: str | dt.date | None = None,
    ) -> list[dict]:
        """Evaluation counts, approval ratio and follow-through for every trainer.

        ``date_from`` and ``date_to`` are inclusive days applied to evaluation
        and session dates; the city filter uses the evaluation's and the
        client's city.
        """

        bounds = []
        for value in (date_from, date_to):
            if value in (None, ""):
                bounds.append(None)
                continue
            parsed = parse_timestamp(value)
            if parsed is None:
                raise ValidationError("Date range is not valid")
            bounds.append(parsed.date())
        if bounds[0] and bounds[1] and bounds[0] > bounds[1]:
            raise ValidationError("Date range is not valid")
        return trainer_performance(
            self.list_trainers(),
            self.list_evaluations(),
            self.list_clients(),
            city_id=city_id,
            date_from=bounds[0],
            date_to=bounds[1],
        )

    def settle_trainer(self, *, adiestrador_id: int, month: str, status: str = SETTLEMENT_PAID) -> dict:
        """Record (or update) the month's settlement and stamp what it pays."""

        if status not in SETTLEMENT_STATUSES:
            raise ValidationError(f"Unknown settlement status: {status}")
        statement = self.trainer_statement(adiestrador_id=adiestrador_id, month=month)
        if statement.settled:
            self.store.update(
                "trainer_settlements",
                {"status": status},
                filters={"id": statement.settlement_id},
            )
            settlement_id = statement.settlement_id
        else:
            totals = statement.live_totals.rounded()
            settlement = self.store.insert(
                "trainer_settlements",
                {
                    "adiestrador_id": adiestrador_id,
                    "month": month,
                    "status": status,
                    "base_imponible": totals.base_imponible,
                    "evaluations_deducted_amount": totals.evaluations_deducted,
                    "iva_amount": totals.iva,
                    "total_amount": totals.total,
                },
            )
            settlement_id = settlement["id"]

        if status == SETTLEMENT_PAID:
            paid = {"trainer_settlement_id": settlement_id, "paid_to_trainer": 1}
            evaluation_ids = [concept.evaluation_id for concept in statement.evaluation_concepts]
            if evaluation_ids:
                self.store.update("evaluations", paid, filters={"id": ("in", evaluation_ids)})
            session_ids = [sid for concept in statement.blocks for sid in concept.session_ids]
            if session_ids:
                self.store.update("sessions", paid, filters={"id": ("in", session_ids)})
        logger.info(
            "Settlement %s for trainer %s (%s) marked %s",
            settlement_id,
            adiestrador_id,
            month,
            status,
        )
        return self.get_settlement(adiestrador_id=adiestrador_id, month=month)

    def close(self) -> None:
        self.store.close()
