"""Tests for guard module."""
import asyncio

import pytest

from skos_browser.guard import EpochToken, RequestEpochs


class TestRequestEpochs:
    """Tests for epoch bookkeeping."""

    def test_begin_request_supersedes(self):
        """Test that a new request makes the previous token stale."""
        epochs = RequestEpochs()
        first = epochs.begin_request("details")
        second = epochs.begin_request("details")

        assert first == EpochToken("details", 1)
        assert not epochs.is_current(first)
        assert epochs.is_current(second)
        assert epochs.current("details") == 2

    def test_scopes_are_independent(self):
        """Test that scopes do not supersede each other."""
        epochs = RequestEpochs()
        details = epochs.begin_request("details")
        epochs.begin_request("children")
        assert epochs.is_current(details)

    def test_invalidate(self):
        """Test superseding without a new request."""
        epochs = RequestEpochs()
        token = epochs.begin_request("details")
        epochs.invalidate("details")
        assert not epochs.is_current(token)


class TestRunGuarded:
    """Tests for run_guarded."""

    def test_applies_all_mutations_when_current(self):
        """Test a chain that is never superseded."""
        epochs = RequestEpochs()
        state = []

        async def chain():
            yield lambda: state.append("metadata")
            await asyncio.sleep(0)
            yield lambda: state.append("labels")

        async def run():
            return await epochs.run_guarded(epochs.begin_request("details"), chain())

        assert asyncio.run(run()) is True
        assert state == ["metadata", "labels"]

    def test_latest_request_wins(self):
        """Test out-of-order completion: the older request resolves last and is dropped."""
        epochs = RequestEpochs()
        state = {}

        async def load(name, gate):
            await gate.wait()
            yield lambda: state.__setitem__("details", name)
            yield lambda: state.__setitem__("labels", name)

        async def run():
            first_gate, second_gate = asyncio.Event(), asyncio.Event()
            first = asyncio.create_task(epochs.run_guarded(epochs.begin_request("details"), load("A", first_gate)))
            second = asyncio.create_task(epochs.run_guarded(epochs.begin_request("details"), load("B", second_gate)))
            # B completes first, A's response arrives afterwards
            second_gate.set()
            second_result = await second
            first_gate.set()
            first_result = await first
            return first_result, second_result

        first_result, second_result = asyncio.run(run())

        assert (first_result, second_result) == (False, True)
        assert state == {"details": "B", "labels": "B"}

    def test_superseded_mid_chain(self):
        """Test that mutations after a suspension are dropped once superseded."""
        epochs = RequestEpochs()
        state = []
        closed = []

        async def chain(gate):
            try:
                yield lambda: state.append("metadata")
                await gate.wait()
                yield lambda: state.append("labels")
            finally:
                closed.append(True)

        async def run():
            gate = asyncio.Event()
            task = asyncio.create_task(epochs.run_guarded(epochs.begin_request("details"), chain(gate)))
            await asyncio.sleep(0)
            epochs.begin_request("details")
            gate.set()
            return await task

        assert asyncio.run(run()) is False
        assert state == ["metadata"]
        assert closed == [True]

    def test_stale_errors_are_dropped(self):
        """Test that an error from a superseded chain does not propagate."""
        epochs = RequestEpochs()

        async def chain():
            epochs.begin_request("details")
            raise RuntimeError("late failure")
            yield  # pragma: no cover

        async def run():
            return await epochs.run_guarded(epochs.begin_request("details"), chain())

        assert asyncio.run(run()) is False

    def test_current_errors_propagate(self):
        """Test that an error from the current chain is raised."""
        epochs = RequestEpochs()

        async def chain():
            raise RuntimeError("failure")
            yield  # pragma: no cover

        async def run():
            return await epochs.run_guarded(epochs.begin_request("details"), chain())

        with pytest.raises(RuntimeError, match="failure"):
            asyncio.run(run())
