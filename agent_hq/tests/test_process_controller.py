import asyncio
import json
import signal
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from agent_hq.errors import ExecutableNotFoundError, ForkFailedError
from agent_hq.events import (
    EventBus,
    ProcessErrorOutput,
    RawOutput,
    SessionStatusChanged,
    StructuredOutput,
)
from agent_hq.services import process_controller
from agent_hq.services.process_controller import (
    ProcessController,
    parse_fork_output,
    resolve_working_dir,
)

SESSION_ID = "44444444-4444-4444-8444-444444444444"


class _FakeStdin:
    def __init__(self, process: "_FakeProcess"):
        self._process = process
        self.writes: list[tuple[bytes, int]] = []
        self.closed = False
        self.stalled = False

    def write(self, data: bytes) -> None:
        # Record how many signals had been delivered when the write happened.
        self.writes.append((data, len(self._process.signals)))
        if self._process.exit_on_write is not None and data == self._process.exit_on_write:
            self._process.finish(0)

    async def drain(self) -> None:
        if self.stalled:
            # A child that never reads its input: the pipe never drains.
            await asyncio.Event().wait()

    def is_closing(self) -> bool:
        return self.closed

    @property
    def text(self) -> str:
        return b"".join(data for data, _ in self.writes).decode("utf-8")


class _FakeProcess:
    """Stand-in for asyncio.subprocess.Process driven by the test."""

    def __init__(self, exit_on_write: bytes | None = None):
        self.stdin = _FakeStdin(self)
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.signals: list[int] = []
        self.exit_on_write = exit_on_write
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def finish(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdin.closed = True
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)

    def terminate(self) -> None:
        self.signals.append(signal.SIGTERM)
        self.finish(-signal.SIGTERM)

    def kill(self) -> None:
        self.signals.append(signal.SIGKILL)
        self.finish(-signal.SIGKILL)


class _FakeForkProcess:
    def __init__(self, stdout: bytes, stderr: bytes = b"", returncode: int = 0):
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode
        self.stdin_input: bytes | None = None

    async def communicate(self, input: bytes | None = None) -> tuple[bytes, bytes]:
        self.stdin_input = input
        return self._stdout, self._stderr


class ProcessControllerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.working_dir = tmpdir.name

        self.bus = EventBus()
        self.events: list = []
        self.bus.subscribe(self.events.append)
        self.controller = ProcessController(
            self.bus,
            executable="claude",
            interrupt_delay=0.01,
            grace_period=0.05,
        )

        resolver = patch.object(process_controller, "resolve_executable", return_value="/usr/local/bin/claude")
        resolver.start()
        self.addCleanup(resolver.stop)

    async def asyncTearDown(self) -> None:
        await self.controller.shutdown()

    def _patch_spawn(self, *processes) -> AsyncMock:
        spawn = AsyncMock(side_effect=list(processes))
        patcher = patch.object(process_controller.asyncio, "create_subprocess_exec", spawn)
        patcher.start()
        self.addCleanup(patcher.stop)
        return spawn

    def _statuses(self) -> list[str]:
        return [e.status for e in self.events if isinstance(e, SessionStatusChanged)]

    async def test_take_control_spawns_resume_once(self) -> None:
        process = _FakeProcess()
        spawn = self._patch_spawn(process)

        first = await self.controller.take_control(SESSION_ID, self.working_dir)
        second = await self.controller.take_control(SESSION_ID, self.working_dir)

        self.assertTrue(first)
        self.assertTrue(second)
        spawn.assert_awaited_once()
        args = spawn.await_args.args
        self.assertEqual(args, ("/usr/local/bin/claude", "--resume", SESSION_ID))
        self.assertEqual(spawn.await_args.kwargs["cwd"], self.working_dir)
        self.assertTrue(self.controller.is_controlled(SESSION_ID))
        self.assertEqual(self._statuses(), ["active"])
        process.finish(0)

    async def test_concurrent_take_control_shares_one_spawn(self) -> None:
        process = _FakeProcess()
        spawn = self._patch_spawn(process)

        results = await asyncio.gather(
            self.controller.take_control(SESSION_ID, self.working_dir),
            self.controller.take_control(SESSION_ID, self.working_dir),
        )

        self.assertEqual(results, [True, True])
        spawn.assert_awaited_once()
        process.finish(0)

    async def test_missing_executable_reports_failure(self) -> None:
        spawn = self._patch_spawn()
        with patch.object(process_controller, "resolve_executable", side_effect=ExecutableNotFoundError("claude")):
            result = await self.controller.take_control(SESSION_ID, self.working_dir)

        self.assertFalse(result)
        spawn.assert_not_awaited()
        self.assertFalse(self.controller.is_controlled(SESSION_ID))

    async def test_spawn_os_error_emits_error_status(self) -> None:
        self._patch_spawn(PermissionError("denied"))

        result = await self.controller.take_control(SESSION_ID, self.working_dir)

        self.assertFalse(result)
        self.assertEqual(self._statuses(), ["error"])
        self.assertFalse(self.controller.is_controlled(SESSION_ID))

    async def test_output_is_bridged_and_exit_reported(self) -> None:
        process = _FakeProcess()
        self._patch_spawn(process)
        await self.controller.take_control(SESSION_ID, self.working_dir)
        supervisor = self.controller._sessions[SESSION_ID].supervisor

        record = json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "hi"},
                        {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "/a"}},
                    ]
                },
            }
        )
        process.stdout.feed_data(record[:15].encode("utf-8"))
        process.stdout.feed_data((record[15:] + "\n").encode("utf-8"))
        process.stderr.feed_data(b"warning: slow\n")
        await asyncio.sleep(0.01)
        process.finish(0)
        await supervisor

        raw = "".join(e.chunk for e in self.events if isinstance(e, RawOutput))
        self.assertEqual(raw, record + "\n")
        structured = [e for e in self.events if isinstance(e, StructuredOutput)]
        self.assertEqual([e.kind for e in structured], ["assistant-message", "tool-use"])
        self.assertEqual(structured[1].payload["name"], "Read")
        errors = [e.chunk for e in self.events if isinstance(e, ProcessErrorOutput)]
        self.assertEqual(errors, ["warning: slow\n"])
        self.assertEqual(self._statuses(), ["active", "completed"])
        self.assertFalse(self.controller.is_controlled(SESSION_ID))

    async def test_nonzero_exit_reports_error(self) -> None:
        process = _FakeProcess()
        self._patch_spawn(process)
        await self.controller.take_control(SESSION_ID, self.working_dir)
        supervisor = self.controller._sessions[SESSION_ID].supervisor

        process.finish(2)
        await supervisor

        self.assertEqual(self._statuses(), ["active", "error"])

    async def test_send_to_uncontrolled_session_is_noop(self) -> None:
        spawn = self._patch_spawn()

        delivered = await self.controller.send_message(SESSION_ID, "hello", "queue")

        self.assertFalse(delivered)
        spawn.assert_not_awaited()
        self.assertEqual(self.events, [])

    async def test_unknown_send_mode_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await self.controller.send_message(SESSION_ID, "hello", "shout")

    async def test_queue_mode_writes_line(self) -> None:
        process = _FakeProcess()
        self._patch_spawn(process)
        await self.controller.take_control(SESSION_ID, self.working_dir)

        delivered = await self.controller.send_message(SESSION_ID, "run the tests", "queue")

        self.assertTrue(delivered)
        self.assertEqual(process.stdin.text, "run the tests\n")
        self.assertEqual(process.signals, [])
        process.finish(0)

    async def test_interrupt_mode_signals_before_writing(self) -> None:
        process = _FakeProcess()
        self._patch_spawn(process)
        await self.controller.take_control(SESSION_ID, self.working_dir)

        delivered = await self.controller.send_message(SESSION_ID, "stop that", "interrupt")

        self.assertTrue(delivered)
        self.assertEqual(process.signals, [signal.SIGINT])
        self.assertEqual(process.stdin.writes, [(b"stop that\n", 1)])
        process.finish(0)

    async def test_release_sends_exit_directive_and_forgets_session(self) -> None:
        process = _FakeProcess(exit_on_write=b"/exit\n")
        self._patch_spawn(process)
        await self.controller.take_control(SESSION_ID, self.working_dir)
        supervisor = self.controller._sessions[SESSION_ID].supervisor

        await self.controller.release(SESSION_ID)

        self.assertFalse(self.controller.is_controlled(SESSION_ID))
        await supervisor
        self.assertEqual(process.stdin.text, "/exit\n")
        self.assertEqual(process.signals, [])
        self.assertEqual(self._statuses(), ["active", "completed"])

    async def test_release_escalates_when_process_lingers(self) -> None:
        process = _FakeProcess()
        self._patch_spawn(process)
        await self.controller.take_control(SESSION_ID, self.working_dir)
        supervisor = self.controller._sessions[SESSION_ID].supervisor

        await self.controller.release(SESSION_ID)
        await asyncio.wait_for(supervisor, timeout=1.0)

        self.assertEqual(process.signals, [signal.SIGTERM])
        self.assertEqual(self._statuses(), ["active", "error"])

    async def test_release_terminates_child_that_stops_reading_input(self) -> None:
        process = _FakeProcess()
        process.stdin.stalled = True
        self._patch_spawn(process)
        await self.controller.take_control(SESSION_ID, self.working_dir)
        supervisor = self.controller._sessions[SESSION_ID].supervisor

        await asyncio.wait_for(self.controller.release(SESSION_ID), timeout=1.0)
        await asyncio.wait_for(supervisor, timeout=1.0)

        self.assertEqual(process.signals, [signal.SIGTERM])
        self.assertFalse(self.controller.is_controlled(SESSION_ID))
        self.assertEqual(self._statuses(), ["active", "error"])

    async def test_shutdown_finishes_when_child_stops_reading_input(self) -> None:
        process = _FakeProcess()
        process.stdin.stalled = True
        self._patch_spawn(process)
        await self.controller.take_control(SESSION_ID, self.working_dir)

        await asyncio.wait_for(self.controller.shutdown(), timeout=2.0)

        self.assertIsNotNone(process.returncode)

    async def test_release_of_unknown_session_is_noop(self) -> None:
        await self.controller.release(SESSION_ID)

        self.assertEqual(self.events, [])

    async def test_take_control_after_release_spawns_new_process(self) -> None:
        first = _FakeProcess(exit_on_write=b"/exit\n")
        second = _FakeProcess()
        spawn = self._patch_spawn(first, second)
        await self.controller.take_control(SESSION_ID, self.working_dir)
        old_supervisor = self.controller._sessions[SESSION_ID].supervisor

        await self.controller.release(SESSION_ID)
        self.assertTrue(await self.controller.take_control(SESSION_ID, self.working_dir))
        await old_supervisor

        self.assertEqual(spawn.await_count, 2)
        self.assertTrue(self.controller.is_controlled(SESSION_ID))
        self.assertEqual(self._statuses()[-1], "active")
        second.finish(0)

    async def test_shutdown_reaps_every_process(self) -> None:
        process = _FakeProcess()
        self._patch_spawn(process)
        await self.controller.take_control(SESSION_ID, self.working_dir)

        await self.controller.shutdown()

        self.assertIsNotNone(process.returncode)
        self.assertEqual(self.controller.controlled_session_ids, [])


class ForkTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.controller = ProcessController(EventBus(), executable="claude")
        resolver = patch.object(process_controller, "resolve_executable", return_value="/usr/local/bin/claude")
        resolver.start()
        self.addCleanup(resolver.stop)

    def _patch_spawn(self, process) -> AsyncMock:
        spawn = AsyncMock(return_value=process)
        patcher = patch.object(process_controller.asyncio, "create_subprocess_exec", spawn)
        patcher.start()
        self.addCleanup(patcher.stop)
        return spawn

    async def test_fork_returns_new_session_id(self) -> None:
        process = _FakeForkProcess(json.dumps({"session_id": "new-session", "result": "ok"}).encode())
        spawn = self._patch_spawn(process)

        new_id = await self.controller.fork(SESSION_ID)

        self.assertEqual(new_id, "new-session")
        self.assertEqual(
            spawn.await_args.args,
            (
                "/usr/local/bin/claude",
                "--resume",
                SESSION_ID,
                "--fork-session",
                "--print",
                "--output-format",
                "json",
            ),
        )
        self.assertEqual(process.stdin_input, b"\n")

    async def test_unparsable_output_returns_original_id(self) -> None:
        self._patch_spawn(_FakeForkProcess(b"Session forked!"))

        self.assertEqual(await self.controller.fork(SESSION_ID), SESSION_ID)

    async def test_nonzero_exit_raises_with_exit_code(self) -> None:
        self._patch_spawn(_FakeForkProcess(b"", b"no such session\n", returncode=1))

        with self.assertRaises(ForkFailedError) as ctx:
            await self.controller.fork(SESSION_ID)

        self.assertEqual(ctx.exception.exit_code, 1)
        self.assertIn("no such session", str(ctx.exception))

    async def test_missing_executable_propagates(self) -> None:
        with patch.object(process_controller, "resolve_executable", side_effect=ExecutableNotFoundError("claude")):
            with self.assertRaises(ExecutableNotFoundError):
                await self.controller.fork(SESSION_ID)


class HelperTests(unittest.TestCase):
    def test_parse_fork_output_accepts_both_key_styles(self) -> None:
        self.assertEqual(parse_fork_output('{"sessionId": "abc"}', "orig"), "abc")
        self.assertEqual(parse_fork_output('{"session_id": ""}', "orig"), "orig")
        self.assertEqual(parse_fork_output("[1]", "orig"), "orig")

    def test_working_dir_falls_back_to_home(self) -> None:
        home = str(Path.home())
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertEqual(resolve_working_dir(tmpdir), tmpdir)
            self.assertEqual(resolve_working_dir(str(Path(tmpdir) / "gone")), home)
        self.assertEqual(resolve_working_dir("relative/dir"), home)
        self.assertEqual(resolve_working_dir(None), home)


if __name__ == "__main__":
    unittest.main()
