"""Tests for the confirmation gate."""

import threading
import time
from concurrent.futures import Future

from codi_agent.confirmation import ConfirmationGate, ConfirmationResult, ToolConfirmation


def _request():
    return ToolConfirmation(tool_name="write_file", input={"path": "a.txt", "content": "x"})


class TestCoerce:
    def test_enum_passthrough(self):
        assert ConfirmationResult.coerce(ConfirmationResult.ABORT) is ConfirmationResult.ABORT

    def test_strings(self):
        assert ConfirmationResult.coerce(" Approve ") is ConfirmationResult.APPROVE
        assert ConfirmationResult.coerce("deny") is ConfirmationResult.DENY

    def test_unrecognized_is_deny(self):
        assert ConfirmationResult.coerce("maybe") is ConfirmationResult.DENY
        assert ConfirmationResult.coerce(None) is ConfirmationResult.DENY


class TestConfirmationGate:
    def test_callback_answer_returned(self):
        seen = []

        def confirm(req):
            seen.append(req)
            return "approve"

        gate = ConfirmationGate(confirm)
        assert gate.request(_request()) is ConfirmationResult.APPROVE
        assert seen[0].tool_name == "write_file"
        assert not gate.waiting

    def test_plain_callback_runs_on_calling_thread(self):
        threads = []

        def confirm(req):
            threads.append(threading.current_thread())
            return "deny"

        gate = ConfirmationGate(confirm, timeout=0.05)
        assert gate.request(_request()) is ConfirmationResult.DENY
        assert threads == [threading.current_thread()]

    def test_interrupted_prompt_aborts(self):
        def confirm(req):
            raise KeyboardInterrupt

        assert ConfirmationGate(confirm).request(_request()) is ConfirmationResult.ABORT

    def test_future_answer(self):
        def confirm(req):
            answer = Future()
            threading.Timer(0.01, answer.set_result, args=(ConfirmationResult.DENY,)).start()
            return answer

        assert ConfirmationGate(confirm).request(_request()) is ConfirmationResult.DENY

    def test_callback_exception_aborts(self):
        def confirm(req):
            raise RuntimeError("UI went away")

        assert ConfirmationGate(confirm).request(_request()) is ConfirmationResult.ABORT

    def test_failed_future_aborts(self):
        answer = Future()
        answer.set_exception(RuntimeError("socket closed"))

        assert ConfirmationGate(lambda req: answer).request(_request()) is ConfirmationResult.ABORT

    def test_timeout_aborts_and_cancels_answer(self):
        answer = Future()
        gate = ConfirmationGate(lambda req: answer, timeout=0.05)

        assert gate.request(_request()) is ConfirmationResult.ABORT
        assert answer.cancelled()
        assert not gate.waiting

    def test_cancel_from_another_thread(self):
        answer = Future()
        gate = ConfirmationGate(lambda req: answer)
        answers = []
        worker = threading.Thread(target=lambda: answers.append(gate.request(_request())))
        worker.start()

        deadline = time.monotonic() + 2
        while not gate.waiting and time.monotonic() < deadline:
            time.sleep(0.005)
        assert gate.cancel()
        worker.join(2)

        assert answers == [ConfirmationResult.ABORT]
        assert answer.cancelled()

    def test_cancel_without_pending_request(self):
        gate = ConfirmationGate(lambda req: "approve")
        assert gate.cancel() is False
