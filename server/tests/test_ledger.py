# ─────────────────────────────────────────────────────────────────────────────
# Tests: Credit ledger backends + per-job settlement
# ─────────────────────────────────────────────────────────────────────────────

import json

import httpx
import pytest

from worldgen.exceptions import InsufficientCreditsError, LedgerUnavailableError
from worldgen.schemas import Job
from worldgen.services.ledger import CreditSettlement, HttpCreditLedger, InMemoryCreditLedger
from worldgen.services.metrics import PipelineMetrics


def charged_job(job_id: str = "job_1", owner: str = "user-1", credits: int = 1, privileged: bool = False) -> Job:
    return Job(job_id=job_id, concept="ancient rome", owner=owner, credits_charged=credits, privileged=privileged)


class TestInMemoryLedger:
    @pytest.mark.asyncio
    async def test_debit_and_credit(self) -> None:
        ledger = InMemoryCreditLedger(starting_balance=3)
        assert await ledger.debit("user-1", 1, job_id="job_1", reason="world_generation") == 2
        assert await ledger.credit("user-1", 1, job_id="job_1", reason="refund") == 3
        assert [t.direction for t in ledger.transactions] == ["debit", "credit"]

    @pytest.mark.asyncio
    async def test_debit_below_zero_refused(self) -> None:
        ledger = InMemoryCreditLedger(balances={"user-1": 0})
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.debit("user-1", 1, job_id="job_1", reason="world_generation")
        assert exc_info.value.status_code == 402
        assert exc_info.value.balance == 0
        assert ledger.balance("user-1") == 0
        assert ledger.transactions == []


class TestHttpLedger:
    @staticmethod
    def _ledger(handler) -> HttpCreditLedger:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpCreditLedger(client, "https://ledger.test/", api_key="ledger-key")

    @pytest.mark.asyncio
    async def test_debit_posts_amount_and_job_id(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"balance": 4})

        balance = await self._ledger(handler).debit("user-1", 1, job_id="job_1", reason="world_generation")

        assert balance == 4
        assert seen[0].url == "https://ledger.test/accounts/user-1/debit"
        assert seen[0].headers["Authorization"] == "Bearer ledger-key"
        assert json.loads(seen[0].content) == {"amount": 1, "jobId": "job_1", "reason": "world_generation"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [402, 409])
    async def test_refused_debit_is_insufficient_credits(self, status: int) -> None:
        ledger = self._ledger(lambda r: httpx.Response(status, json={"balance": 0}))
        with pytest.raises(InsufficientCreditsError):
            await ledger.debit("user-1", 1, job_id="job_1", reason="world_generation")

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self) -> None:
        ledger = self._ledger(lambda r: httpx.Response(500))
        with pytest.raises(LedgerUnavailableError) as exc_info:
            await ledger.debit("user-1", 1, job_id="job_1", reason="world_generation")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_connection_error_is_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LedgerUnavailableError):
            await self._ledger(handler).credit("user-1", 1, job_id="job_1", reason="refund")

    @pytest.mark.asyncio
    async def test_missing_balance_is_unavailable(self) -> None:
        ledger = self._ledger(lambda r: httpx.Response(200, json={"ok": True}))
        with pytest.raises(LedgerUnavailableError):
            await ledger.credit("user-1", 1, job_id="job_1", reason="refund")


class TestCreditSettlement:
    @pytest.mark.asyncio
    async def test_charge_debits_cost(self) -> None:
        ledger = InMemoryCreditLedger(starting_balance=3)
        settlement = CreditSettlement(ledger, cost=1)
        assert await settlement.charge("user-1", "job_1", privileged=False) == 2

    @pytest.mark.asyncio
    async def test_privileged_charge_skips_ledger(self) -> None:
        ledger = InMemoryCreditLedger(starting_balance=0)
        settlement = CreditSettlement(ledger, cost=1)
        assert await settlement.charge("admin", "job_1", privileged=True) is None
        assert ledger.transactions == []

    @pytest.mark.asyncio
    async def test_refund_happens_at_most_once(self) -> None:
        ledger = InMemoryCreditLedger(starting_balance=3)
        metrics = PipelineMetrics()
        settlement = CreditSettlement(ledger, cost=1, metrics=metrics)
        await settlement.charge("user-1", "job_1", privileged=False)

        job = charged_job()
        assert await settlement.refund(job, reason="pipeline_error") is True
        assert await settlement.refund(job, reason="pipeline_error") is False

        assert ledger.balance("user-1") == 3
        assert metrics.count("refunds_issued") == 1

    @pytest.mark.asyncio
    async def test_refund_skipped_for_privileged_or_uncharged(self) -> None:
        ledger = InMemoryCreditLedger(starting_balance=3)
        settlement = CreditSettlement(ledger, cost=1)
        assert await settlement.refund(charged_job(privileged=True, credits=0), reason="x") is False
        assert await settlement.refund(charged_job(credits=0), reason="x") is False
        assert ledger.transactions == []

    @pytest.mark.asyncio
    async def test_refund_failure_is_swallowed_and_counted(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        metrics = PipelineMetrics()
        settlement = CreditSettlement(HttpCreditLedger(client, "https://ledger.test"), cost=1, metrics=metrics)

        assert await settlement.refund(charged_job(), reason="pipeline_error") is False
        assert metrics.count("refunds_failed") == 1
