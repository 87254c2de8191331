"""
Tests for the settlement saga runner.
"""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest

from slotledger.exceptions import PartialSettlementFailureError
from slotledger.services.saga import Saga, SagaStep


class Ledger:
    """Records which actions and compensations ran, in order."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def step(self, name: str, *, fail: BaseException | None = None, fail_undo: bool = False):
        async def action():
            self.calls.append(f"do:{name}")
            if fail is not None:
                raise fail
            return f"result:{name}"

        async def compensate(result):
            self.calls.append(f"undo:{name}:{result}")
            if fail_undo:
                raise RuntimeError(f"cannot undo {name}")

        return SagaStep(name, action, compensate)


class TestSagaRun:
    async def test_all_steps_succeed(self):
        ledger = Ledger()

        results = await Saga("purchase").run([ledger.step("a"), ledger.step("b")])

        assert results == {"a": "result:a", "b": "result:b"}
        assert ledger.calls == ["do:a", "do:b"]

    async def test_later_steps_see_earlier_results(self):
        saga = Saga("purchase")
        seen = []

        async def second():
            seen.append(saga.results["first"])

        async def first():
            return 42

        await saga.run([SagaStep("first", first), SagaStep("second", second)])

        assert seen == [42]

    async def test_first_step_failure_is_raised_as_is(self):
        ledger = Ledger()

        with pytest.raises(ValueError):
            await Saga("renew").run([ledger.step("a", fail=ValueError("nope")), ledger.step("b")])

        assert ledger.calls == ["do:a"]

    async def test_compensates_in_reverse_order(self):
        ledger = Ledger()
        steps = [ledger.step("a"), ledger.step("b"), ledger.step("c", fail=ValueError("boom"))]

        with pytest.raises(PartialSettlementFailureError) as exc_info:
            await Saga("renew").run(steps)

        assert ledger.calls == ["do:a", "do:b", "do:c", "undo:b:result:b", "undo:a:result:a"]
        assert exc_info.value.step == "c"
        assert exc_info.value.compensated is True
        assert isinstance(exc_info.value.__cause__, ValueError)

    async def test_steps_without_compensation_are_skipped(self):
        ledger = Ledger()

        async def read_only():
            ledger.calls.append("do:read")

        steps = [ledger.step("a"), SagaStep("read", read_only), ledger.step("c", fail=KeyError("x"))]

        with pytest.raises(PartialSettlementFailureError):
            await Saga("renew").run(steps)

        assert ledger.calls[-1] == "undo:a:result:a"

    async def test_failed_compensation_is_reported(self):
        ledger = Ledger()
        steps = [
            ledger.step("debit", fail_undo=True),
            ledger.step("credit"),
            ledger.step("extend", fail=ValueError("boom")),
        ]

        with patch("slotledger.services.saga.metrics") as mock_metrics:
            with pytest.raises(PartialSettlementFailureError) as exc_info:
                await Saga("renew").run(steps)

        exc = exc_info.value
        assert exc.compensated is False
        assert [name for name, _ in exc.compensation_errors] == ["debit"]
        # The remaining compensations still ran.
        assert "undo:credit:result:credit" in ledger.calls
        mock_metrics.reconciliation_required_total.labels.assert_called_once_with(operation="renew")

    async def test_timeout_is_logged_as_unknown_outcome(self):
        ledger = Ledger()
        steps = [ledger.step("debit"), ledger.step("credit", fail=asyncio.TimeoutError())]

        with patch("slotledger.services.saga.logger") as mock_logger:
            with pytest.raises(PartialSettlementFailureError):
                await Saga("renew").run(steps)

        events = [call.args[0] for call in mock_logger.error.call_args_list]
        assert "saga_step_outcome_unknown" in events


class TestSavepoints:
    async def test_each_action_and_compensation_gets_a_savepoint(self):
        ledger = Ledger()
        opened = []

        @asynccontextmanager
        async def savepoint():
            opened.append(len(ledger.calls))
            yield

        steps = [ledger.step("a"), ledger.step("b", fail=ValueError("boom"))]

        with pytest.raises(PartialSettlementFailureError):
            await Saga("renew", savepoint=savepoint).run(steps)

        # do:a, do:b, undo:a
        assert len(opened) == 3
