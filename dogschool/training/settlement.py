"""Monthly trainer settlement computation.

Trainers invoice the school once a month. Each block of four completed
sessions of a billable client is paid at a flat VAT-inclusive price, and
every evaluation the trainer performed that month is deducted (the trainer
collected the evaluation fee in cash). VAT is then applied on the reduced
base.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .dates import in_month, parse_month, parse_timestamp
from .errors import ComputationError
from .ledger import completed_sessions
from .store import as_list

BLOCK_PRICE_VAT_INCLUSIVE = 120.0
EVALUATION_DEDUCTION = 20.0
VAT_RATE = 0.21
BLOCK_SIZE = 4

RESULT_APPROVED = "approved"
RESULT_REJECTED = "rejected"
EVALUATION_RESULTS = (RESULT_APPROVED, RESULT_REJECTED)

SETTLEMENT_PENDING = "pending"
SETTLEMENT_PAID = "paid"
SETTLEMENT_STATUSES = (SETTLEMENT_PENDING, SETTLEMENT_PAID)

CONCEPT_BLOCK = "block"
CONCEPT_EVALUATION = "evaluation"

UNKNOWN_CLIENT = "Unknown client"


@dataclass
class BillingConcept:
    id: str
    client_id: int | None
    client_name: str
    type: str
    date: str
    amount: float = 0.0
    deduction: float = 0.0
    session_ids: list = field(default_factory=list)
    evaluation_id: int | None = None


@dataclass
class InProgressBlock:
    client_id: int
    client_name: str
    sessions_completed: int
    sessions_needed: int = BLOCK_SIZE


@dataclass
class Totals:
    base_imponible: float = 0.0
    evaluations_deducted: float = 0.0
    base_reducida: float = 0.0
    iva: float = 0.0
    total: float = 0.0

    def rounded(self) -> "Totals":
        return Totals(*(round(value, 2) for value in self.as_tuple()))

    def as_tuple(self) -> tuple[float, float, float, float, float]:
        return (
            self.base_imponible,
            self.evaluations_deducted,
            self.base_reducida,
            self.iva,
            self.total,
        )


@dataclass
class TrainerStatement:
    """View model of a trainer's month, ready to be rendered."""

    trainer_id: int
    month: str
    completed_blocks: int
    evaluations: int
    totals: Totals
    live_totals: Totals
    concepts: list[BillingConcept]
    in_progress: list[InProgressBlock]
    status: str | None = None
    settlement_id: int | None = None
    trainer_name: str | None = None

    @property
    def settled(self) -> bool:
        return self.settlement_id is not None

    @property
    def has_drift(self) -> bool:
        """True when a stored settlement disagrees with the live figures."""

        if not self.settled:
            return False
        return self.totals.rounded().as_tuple() != self.live_totals.rounded().as_tuple()

    @property
    def blocks(self) -> list[BillingConcept]:
        return [concept for concept in self.concepts if concept.type == CONCEPT_BLOCK]

    @property
    def evaluation_concepts(self) -> list[BillingConcept]:
        return [concept for concept in self.concepts if concept.type == CONCEPT_EVALUATION]

    @property
    def gross_blocks_amount(self) -> float:
        return self.completed_blocks * BLOCK_PRICE_VAT_INCLUSIVE


def billable_clients(clients: Iterable[Mapping], trainer_id: int) -> list[dict]:
    """Clients with at least one approved evaluation by ``trainer_id``."""

    billable = []
    for client in clients:
        evaluations = as_list(client.get("evaluations"))
        if any(
            ev.get("adiestrador_id") == trainer_id and ev.get("result") == RESULT_APPROVED
            for ev in evaluations
        ):
            billable.append(dict(client))
    return billable


def partition_blocks(sessions: Iterable[Mapping] | Mapping | None) -> tuple[list[list[dict]], list[dict]]:
    """Split completed sessions into full blocks and the in-progress remainder."""

    done = completed_sessions(sessions)
    full = len(done) - len(done) % BLOCK_SIZE
    blocks = [done[start:start + BLOCK_SIZE] for start in range(0, full, BLOCK_SIZE)]
    return blocks, done[full:]


def compute_totals(num_blocks: int, num_evaluations: int) -> Totals:
    for value in (num_blocks, num_evaluations):
        if not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
            raise ComputationError(f"Cannot bill a count of {value!r}")
    base_bloques = num_blocks * BLOCK_PRICE_VAT_INCLUSIVE / (1 + VAT_RATE)
    deducciones = num_evaluations * EVALUATION_DEDUCTION
    base_reducida = max(0.0, base_bloques - deducciones)
    iva = base_reducida * VAT_RATE
    return Totals(
        base_imponible=base_bloques,
        evaluations_deducted=deducciones,
        base_reducida=base_reducida,
        iva=iva,
        total=base_reducida + iva,
    )


def totals_from_settlement(settlement: Mapping) -> Totals:
    base = float(settlement.get("base_imponible") or 0)
    deducted = float(settlement.get("evaluations_deducted_amount") or 0)
    return Totals(
        base_imponible=base,
        evaluations_deducted=deducted,
        base_reducida=max(0.0, base - deducted),
        iva=float(settlement.get("iva_amount") or 0),
        total=float(settlement.get("total_amount") or 0),
    )


def _client_name(client: Mapping | None) -> str:
    if client and client.get("name"):
        return client["name"]
    return UNKNOWN_CLIENT


def _sort_key(concept: BillingConcept) -> dt.datetime:
    return parse_timestamp(concept.date) or dt.datetime.min


def build_statement(
    *,
    trainer_id: int,
    month: str,
    evaluations: Iterable[Mapping],
    clients: Iterable[Mapping],
    settlement: Mapping | None = None,
) -> TrainerStatement:
    """Compute a trainer's statement for ``month`` (``YYYY-MM``).

    ``evaluations`` may contain rows of other trainers and other months;
    they are filtered here. ``clients`` is the full roster with
    ``sessions`` and ``evaluations`` embedded. When ``settlement`` is given
    its stored figures replace the live ones in ``totals``.
    """

    year, number = parse_month(month)
    clients = [dict(client) for client in clients]
    names = {client.get("id"): client.get("name") for client in clients}

    month_evaluations = [
        ev
        for ev in evaluations
        if ev.get("adiestrador_id") == trainer_id and in_month(ev.get("created_at"), year, number)
    ]

    concepts: list[BillingConcept] = []
    in_progress: list[InProgressBlock] = []
    for client in billable_clients(clients, trainer_id):
        blocks, remainder = partition_blocks(client.get("sessions"))
        for index, block in enumerate(blocks, start=1):
            last = block[-1]
            if not in_month(last.get("date"), year, number):
                continue
            concepts.append(
                BillingConcept(
                    id=f"block-{client['id']}-{index * BLOCK_SIZE}",
                    client_id=client["id"],
                    client_name=_client_name(client),
                    type=CONCEPT_BLOCK,
                    date=last["date"],
                    amount=BLOCK_PRICE_VAT_INCLUSIVE,
                    session_ids=[session["id"] for session in block],
                )
            )
        if remainder:
            in_progress.append(
                InProgressBlock(
                    client_id=client["id"],
                    client_name=_client_name(client),
                    sessions_completed=len(remainder),
                )
            )

    for ev in month_evaluations:
        embedded = ev.get("clients") or ev.get("client")
        client_name = _client_name(
            embedded if isinstance(embedded, Mapping) else {"name": names.get(ev.get("client_id"))}
        )
        concepts.append(
            BillingConcept(
                id=f"ev-{ev['id']}",
                client_id=ev.get("client_id"),
                client_name=client_name,
                type=CONCEPT_EVALUATION,
                date=ev["created_at"],
                deduction=EVALUATION_DEDUCTION,
                evaluation_id=ev["id"],
            )
        )

    concepts.sort(key=_sort_key, reverse=True)
    num_blocks = sum(1 for concept in concepts if concept.type == CONCEPT_BLOCK)
    live = compute_totals(num_blocks, len(month_evaluations))

    return TrainerStatement(
        trainer_id=trainer_id,
        month=month,
        completed_blocks=num_blocks,
        evaluations=len(month_evaluations),
        totals=totals_from_settlement(settlement) if settlement else live,
        live_totals=live,
        concepts=concepts,
        in_progress=in_progress,
        status=settlement.get("status") if settlement else None,
        settlement_id=settlement.get("id") if settlement else None,
    )
