# ─────────────────────────────────────────────────────────────────────────────
# Credit Ledger: debit before work starts, refund if work fails
# ─────────────────────────────────────────────────────────────────────────────
# The balance itself lives in an external service. This module owns:
#   - CreditLedger protocol + the HTTP client for the real service
#   - InMemoryCreditLedger for local dev (no LEDGER_URL) and tests
#   - CreditSettlement: per-job glue enforcing one debit / at most one refund
#     and the privileged bypass (privileged owners never touch the ledger)
#
# Refunds are best-effort. A failed refund is logged and counted, and the
# job stays in `error`. See DESIGN.md for the webhook double-credit question.
# ─────────────────────────────────────────────────────────────────────────────

from dataclasses import dataclass
from typing import Literal, Protocol

import httpx
import structlog

from worldgen.exceptions import InsufficientCreditsError, LedgerUnavailableError
from worldgen.schemas import Job
from worldgen.services.metrics import PipelineMetrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CreditTransaction:
    job_id: str
    owner_id: str
    amount: int
    direction: Literal["debit", "credit"]
    reason: str


class CreditLedger(Protocol):
    async def debit(self, owner_id: str, amount: int, *, job_id: str, reason: str) -> int: ...

    async def credit(self, owner_id: str, amount: int, *, job_id: str, reason: str) -> int: ...


class HttpCreditLedger:
    """Client for the external balance service.

    ``POST {base}/accounts/{owner}/debit|credit`` with ``{amount, jobId,
    reason}``; answers ``{"balance": int}``. A debit refused for balance
    comes back as 402 (or 409 from older deployments).
    """

    name = "http"

    def __init__(self, client: httpx.AsyncClient, base_url: str, api_key: str = "") -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    async def debit(self, owner_id: str, amount: int, *, job_id: str, reason: str) -> int:
        return await self._post(owner_id, "debit", amount, job_id, reason)

    async def credit(self, owner_id: str, amount: int, *, job_id: str, reason: str) -> int:
        return await self._post(owner_id, "credit", amount, job_id, reason)

    async def _post(self, owner_id: str, action: str, amount: int, job_id: str, reason: str) -> int:
        url = f"{self._base_url}/accounts/{owner_id}/{action}"
        try:
            response = await self._client.post(
                url,
                json={"amount": amount, "jobId": job_id, "reason": reason},
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"{action} request failed: {e}") from e

        if action == "debit" and response.status_code in (402, 409):
            balance = _balance_or_none(response)
            raise InsufficientCreditsError(owner_id, amount, balance)
        if response.is_error:
            raise LedgerUnavailableError(f"{action} returned {response.status_code}")

        balance = _balance_or_none(response)
        if balance is None:
            raise LedgerUnavailableError(f"{action} response has no balance")
        return balance


def _balance_or_none(response: httpx.Response) -> int | None:
    try:
        return int(response.json()["balance"])
    except (ValueError, KeyError, TypeError):
        return None


class InMemoryCreditLedger:
    """Process-local balances. Unknown owners start at ``starting_balance``."""

    name = "memory"

    def __init__(self, starting_balance: int = 0, balances: dict[str, int] | None = None) -> None:
        self._starting_balance = starting_balance
        self._balances: dict[str, int] = dict(balances or {})
        self.transactions: list[CreditTransaction] = []

    def balance(self, owner_id: str) -> int:
        return self._balances.get(owner_id, self._starting_balance)

    async def debit(self, owner_id: str, amount: int, *, job_id: str, reason: str) -> int:
        current = self.balance(owner_id)
        if current < amount:
            raise InsufficientCreditsError(owner_id, amount, current)
        self._balances[owner_id] = current - amount
        self.transactions.append(CreditTransaction(job_id, owner_id, amount, "debit", reason))
        return self._balances[owner_id]

    async def credit(self, owner_id: str, amount: int, *, job_id: str, reason: str) -> int:
        self._balances[owner_id] = self.balance(owner_id) + amount
        self.transactions.append(CreditTransaction(job_id, owner_id, amount, "credit", reason))
        return self._balances[owner_id]


class CreditSettlement:
    """Per-job ledger reconciliation used by the control surface and pipeline."""

    def __init__(
        self,
        ledger: CreditLedger,
        cost: int,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        self._ledger = ledger
        self._cost = cost
        self._metrics = metrics
        self._refunded: set[str] = set()

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    @property
    def cost(self) -> int:
        return self._cost

    async def charge(self, owner_id: str, job_id: str, privileged: bool) -> int | None:
        """Debit the job's cost. Returns the new balance, None when privileged.

        Raises InsufficientCreditsError / LedgerUnavailableError; the caller
        must not create the job in that case.
        """
        if privileged or self._cost <= 0:
            return None
        balance = await self._ledger.debit(
            owner_id, self._cost, job_id=job_id, reason="world_generation"
        )
        logger.info("credits_debited", job_id=job_id, owner=owner_id, amount=self._cost, balance=balance)
        return balance

    async def refund(self, job: Job, reason: str) -> bool:
        """Credit back what ``job`` was charged. Best-effort, at most once per job."""
        if job.privileged or job.credits_charged <= 0:
            return False
        if job.job_id in self._refunded:
            logger.warning("refund_already_issued", job_id=job.job_id)
            return False
        # Claimed before the await so a concurrent caller can't double-refund.
        self._refunded.add(job.job_id)
        try:
            balance = await self._ledger.credit(
                job.owner, job.credits_charged, job_id=job.job_id, reason=reason
            )
        except Exception as e:
            logger.error(
                "refund_failed",
                job_id=job.job_id,
                owner=job.owner,
                amount=job.credits_charged,
                error=str(e),
            )
            if self._metrics:
                self._metrics.inc("refunds_failed")
            return False

        logger.info(
            "credits_refunded",
            job_id=job.job_id,
            owner=job.owner,
            amount=job.credits_charged,
            balance=balance,
            reason=reason,
        )
        if self._metrics:
            self._metrics.inc("refunds_issued")
        return True
