"""Per-trainer evaluation and follow-through figures for the admin panel."""

from __future__ import annotations

import datetime as dt
from typing import Iterable, Mapping

from .dates import parse_timestamp
from .ledger import STATUS_ACTIVE
from .settlement import RESULT_APPROVED
from .store import as_list


def _within(value, date_from: dt.date | None, date_to: dt.date | None) -> bool:
    if date_from is None and date_to is None:
        return True
    parsed = parse_timestamp(value)
    if parsed is None:
        return False
    day = parsed.date()
    if date_from is not None and day < date_from:
        return False
    if date_to is not None and day > date_to:
        return False
    return True


def days_to_first_session(client: Mapping) -> int | None:
    """Whole days between the evaluation and session 1, if both are known."""

    evaluated = parse_timestamp(client.get("evaluation_done_at"))
    first = next(
        (row for row in as_list(client.get("sessions")) if row.get("session_number") == 1),
        None,
    )
    started = parse_timestamp(first.get("date")) if first else None
    if evaluated is None or started is None:
        return None
    return int((started - evaluated).total_seconds() / 86400)


def trainer_performance(
    trainers: Iterable[Mapping],
    evaluations: Iterable[Mapping],
    clients: Iterable[Mapping],
    *,
    city_id: int | None = None,
    date_from: dt.date | None = None,
    date_to: dt.date | None = None,
) -> list[dict]:
    evaluations = list(evaluations)
    clients = list(clients)
    if city_id:
        clients = [client for client in clients if client.get("city_id") == city_id]
    city_client_ids = {client["id"] for client in clients}

    in_range = [
        row
        for row in evaluations
        if (not city_id or row.get("city_id") == city_id)
        and _within(row.get("created_at"), date_from, date_to)
    ]

    rows = []
    for trainer in trainers:
        own = [row for row in in_range if row.get("adiestrador_id") == trainer["id"]]
        # a trainer follows every client they ever evaluated
        followed = {
            row["client_id"] for row in evaluations if row.get("adiestrador_id") == trainer["id"]
        } & city_client_ids
        followed_clients = [client for client in clients if client["id"] in followed]

        approved = sum(1 for row in own if row.get("result") == RESULT_APPROVED)
        completed = sum(
            1
            for client in followed_clients
            for session in as_list(client.get("sessions"))
            if session.get("completed") and _within(session.get("date"), date_from, date_to)
        )
        waits = [
            days
            for days in (days_to_first_session(client) for client in followed_clients)
            if days is not None and days >= 0
        ]
        rows.append(
            {
                "id": trainer["id"],
                "name": trainer.get("full_name") or "Unnamed",
                "total_evaluations": len(own),
                "approved_evaluations": approved,
                "success_ratio": approved / len(own) * 100 if own else 0.0,
                "completed_sessions": completed,
                "active_clients": sum(
                    1 for client in followed_clients if client.get("status") == STATUS_ACTIVE
                ),
                "avg_days_to_first_session": sum(waits) / len(waits) if waits else 0.0,
            }
        )
    return rows
