#!/usr/bin/env python3
"""Runs real shell commands through the runner and checks the kill policies,
the success strategies and the emitted lines."""

import sys
import os
import re
import subprocess
import time
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src", "py"))

import concurrently
from concurrently import (
	CommandSpec,
	ConfigurationError,
	Exited,
	Killed,
	Options,
	Runner,
	StateError,
	SPAWN_FAILURE_EXIT_CODE,
)


class Collector:
	"""Collects what the runner writes."""

	def __init__(self):
		self.data = bytearray()

	def __call__(self, data):
		self.data.extend(data)

	@property
	def lines(self):
		return self.data.decode("utf8").splitlines()


def runner(commands, collector, **options):
	return Runner(commands, Options.Make(**options), collector)


class TestSuccess(unittest.TestCase):
	def test_two_successful_commands_exit_0(self):
		out = Collector()
		self.assertEqual(concurrently.run(["echo test", "echo test"], writer=out), 0)
		self.assertEqual(out.lines.count("[0] test"), 1)
		self.assertEqual(out.lines.count("[1] test"), 1)
		self.assertIn("[0] echo test exited with code 0", out.lines)
		self.assertIn("[1] echo test exited with code 0", out.lines)

	def test_unknown_command_exits_non_zero(self):
		out = Collector()
		code = concurrently.run(["echo test", "nosuchcmd", "echo test"], writer=out)
		self.assertNotEqual(code, 0)
		self.assertEqual(code, 127)

	def test_failing_commands_return_the_first_failure(self):
		out = Collector()
		code = concurrently.run(["echo 1 && nosuchcmd", "echo 1 && nosuchcmd"], writer=out)
		self.assertEqual(code, 127)

	def test_lowest_ordinal_failure_wins_regardless_of_timing(self):
		out = Collector()
		self.assertEqual(concurrently.run(["sleep 0.2; exit 3", "exit 4"], writer=out), 3)

	def test_success_first(self):
		out = Collector()
		r = runner(["echo test", "sleep 0.1 && nosuchcmd"], out, kill_others=True, success="first")
		self.assertEqual(r.run(), 0)
		self.assertIsInstance(r.completions[1].state, Killed)

	def test_success_last(self):
		out = Collector()
		r = runner(["echo test", "sleep 0.1 && nosuchcmd"], out, kill_others=True, success="last")
		self.assertNotEqual(r.run(), 0)

	def test_spawn_failure_is_a_failed_command(self):
		out = Collector()
		error = FileNotFoundError(2, "No such file or directory", "/bin/sh")
		with patch("concurrently.subprocess.Popen", side_effect=error):
			r = runner(["echo test"], out)
			self.assertEqual(r.run(), SPAWN_FAILURE_EXIT_CODE)
		self.assertEqual(r.completions[0].state, Exited(SPAWN_FAILURE_EXIT_CODE))
		self.assertTrue(any("failed to start" in _ for _ in out.lines))

	def test_unstartable_command_text_is_a_failed_command(self):
		out = Collector()
		r = runner(["sleep 0.3; echo ok", "echo a\x00b"], out)
		self.assertEqual(r.run(), SPAWN_FAILURE_EXIT_CODE)
		self.assertEqual(r.completions[0].state, Exited(0))
		self.assertEqual(r.completions[1].state, Exited(SPAWN_FAILURE_EXIT_CODE))
		self.assertIn("[0] ok", out.lines)
		self.assertTrue(any(_.startswith("[1] failed to start") for _ in out.lines))


class TestKillPolicies(unittest.TestCase):
	def test_kill_others_on_fail_terminates_the_others(self):
		out = Collector()
		r = runner(["sleep 1", "exit 1", "sleep 1"], out, kill_others_on_fail=True)
		started = time.time()
		self.assertNotEqual(r.run(), 0)
		self.assertLess(time.time() - started, 1.0)
		self.assertEqual(sorted(r.signalled), [(0, "SIGTERM"), (2, "SIGTERM")])
		self.assertEqual(r.completions[1].state, Exited(1))
		self.assertEqual(r.completions[0].state, Killed("SIGTERM"))
		self.assertEqual(r.completions[2].state, Killed("SIGTERM"))
		self.assertEqual(r.decision.cause, 1)
		self.assertIn("[0] sleep 1 terminated by SIGTERM", out.lines)

	def test_kill_others_on_fail_spares_successful_runs(self):
		out = Collector()
		r = runner(
			["echo killTest1", "echo killTest2", "echo killTest3"],
			out,
			kill_others_on_fail=True,
		)
		self.assertEqual(r.run(), 0)
		self.assertEqual(r.signalled, [])
		self.assertFalse(r.decision)
		self.assertNotIn("SIGTERM", out.data.decode("utf8"))
		self.assertNotIn("terminated by", out.data.decode("utf8"))
		for i in range(3):
			self.assertEqual(out.lines.count(f"[{i}] killTest{i + 1}"), 1)

	def test_kill_others_kills_on_success(self):
		out = Collector()
		r = runner(["sleep 1", "echo test", "sleep 0.1 && nosuchcmd"], out, kill_others=True)
		self.assertNotEqual(r.run(), 0)
		self.assertEqual(sorted(r.signalled), [(0, "SIGTERM"), (2, "SIGTERM")])
		self.assertEqual(r.completions[1].state, Exited(0))
		self.assertNotIn("[2] sleep 0.1 && nosuchcmd exited with code 127", out.lines)

	def test_kill_others_fires_once(self):
		out = Collector()
		r = runner(["exit 1", "exit 2", "sleep 1"], out, kill_others=True)
		r.run()
		self.assertEqual([_ for _ in r.signalled if _[0] == 2], [(2, "SIGTERM")])

	def test_no_policy_lets_commands_finish(self):
		out = Collector()
		r = runner(["exit 2", "sleep 0.2; echo done"], out)
		self.assertEqual(r.run(), 2)
		self.assertEqual(r.signalled, [])
		self.assertIn("[1] done", out.lines)
		self.assertEqual(r.completions[1].state, Exited(0))

	def test_custom_kill_signal(self):
		out = Collector()
		r = runner(["exit 1", "sleep 1"], out, kill_others=True, kill_signal="INT")
		r.run()
		self.assertEqual(r.signalled, [(1, "SIGINT")])
		self.assertEqual(r.completions[1].state, Killed("SIGINT"))

	def test_kill_timeout_escalates_to_sigkill(self):
		out = Collector()
		r = runner(
			["sleep 0.1; exit 1", "trap '' TERM; sleep 3"],
			out,
			kill_others=True,
			kill_timeout=0.3,
		)
		started = time.time()
		r.run()
		self.assertLess(time.time() - started, 2.5)
		self.assertEqual(r.signalled, [(1, "SIGTERM"), (1, "SIGKILL")])
		self.assertEqual(r.completions[1].state, Killed("SIGKILL"))


class TestOutput(unittest.TestCase):
	def test_default_labels(self):
		out = Collector()
		self.assertEqual(concurrently.run(["echo one", "echo two"], writer=out), 0)
		lines = sorted(_ for _ in out.lines if re.search(r"(one|two)$", _))
		self.assertEqual(lines, ["[0] one", "[1] two"])

	def test_names(self):
		out = Collector()
		self.assertEqual(concurrently.run(["echo one", "echo two"], names="aa,bb", writer=out), 0)
		lines = sorted(_ for _ in out.lines if re.search(r"(one|two)$", _))
		self.assertEqual(lines, ["[aa] one", "[bb] two"])

	def test_missing_names_fall_back_to_the_index(self):
		out = Collector()
		concurrently.run(["echo one", "echo two"], names="aa", writer=out)
		self.assertIn("[aa] one", out.lines)
		self.assertIn("[1] two", out.lines)

	def test_descriptors_carry_names_and_colors(self):
		out = Collector()
		code = concurrently.run(
			[CommandSpec(7, "echo one", "first"), {"command": "echo two", "name": "second"}],
			writer=out,
		)
		self.assertEqual(code, 0)
		self.assertIn("[first] one", out.lines)
		self.assertIn("[second] two", out.lines)

	def test_unknown_color_does_not_fail(self):
		out = Collector()
		self.assertEqual(concurrently.run(["echo colors"], colors="not.a.color", writer=out), 0)
		self.assertIn("[0] colors", out.lines)

	def test_color(self):
		out = Collector()
		concurrently.run(["echo colors"], colors="red", writer=out)
		self.assertIn(b"\033[31m[0]\033[0m colors\n", bytes(out.data))

	def test_lines_keep_their_order(self):
		out = Collector()
		concurrently.run(["for i in 1 2 3 4 5 6 7 8; do echo $i; done"], writer=out)
		self.assertEqual(
			[_ for _ in out.lines if "exited" not in _],
			[f"[0] {i}" for i in range(1, 9)],
		)

	def test_unterminated_output_is_flushed_before_the_status(self):
		out = Collector()
		concurrently.run(["printf 'a\\nb'"], writer=out)
		self.assertEqual(out.lines, ["[0] a", "[0] b", "[0] printf 'a\\nb' exited with code 0"])

	def test_stderr(self):
		out = Collector()
		concurrently.run(["echo oops >&2"], writer=out)
		self.assertIn("[0] oops", out.lines)

	def test_hide(self):
		out = Collector()
		concurrently.run(["echo hidden", "echo shown"], names="a,b", hide="a", writer=out)
		self.assertNotIn("[a] hidden", out.lines)
		self.assertIn("[b] shown", out.lines)
		self.assertIn("[a] echo hidden exited with code 0", out.lines)

	def test_raw(self):
		out = Collector()
		concurrently.run(["echo one"], raw=True, writer=out)
		self.assertEqual(out.lines, ["one"])


class TestRunner(unittest.TestCase):
	def test_runs_only_once(self):
		r = runner(["true"], Collector())
		self.assertEqual(r.run(), 0)
		self.assertEqual(r.phase, "done")
		self.assertEqual(r.exitCode, 0)
		with self.assertRaises(StateError):
			r.run()

	def test_commands_run_concurrently(self):
		started = time.time()
		self.assertEqual(concurrently.run(["sleep 0.5", "sleep 0.5", "sleep 0.5"], writer=Collector()), 0)
		self.assertLess(time.time() - started, 1.4)

	def test_records_carry_pids_and_times(self):
		r = runner(["echo $$"], Collector())
		r.run()
		record = r.records[0]
		self.assertIsNotNone(record.pid)
		self.assertLessEqual(record.started, record.ended)

	def test_relay_is_torn_down(self):
		r = runner(["true"], Collector())
		r.run()
		self.assertFalse(r.relay.isInstalled)

	def test_pipes_are_released_when_the_command_ends(self):
		released = []

		def writer(data):
			if b"later" in data:
				process = r.handles[0].process
				released.append((process.stdout.closed, process.stderr.closed))

		r = runner(["true", "sleep 0.5; echo later"], writer)
		self.assertEqual(r.run(), 0)
		self.assertTrue(released)
		self.assertEqual(set(released), {(True, True)})

	def test_read_error_drops_only_the_failing_stream(self):
		out = Collector()
		popen, read = subprocess.Popen, os.read
		broken = set()

		def spawn(*args, **kwargs):
			process = popen(*args, **kwargs)
			broken.add(process.stderr.fileno())
			return process

		def failing_read(fd, size):
			if fd in broken:
				raise OSError(5, "Input/output error")
			return read(fd, size)

		with patch("concurrently.subprocess.Popen", spawn), patch("concurrently.os.read", failing_read):
			r = runner(["echo out; echo err >&2"], out)
			self.assertEqual(r.run(), 0)
		self.assertEqual(len(broken), 1)
		self.assertIn("[0] out", out.lines)
		self.assertNotIn("[0] err", out.lines)
		self.assertEqual(r.completions[0].state, Exited(0))

	def test_configuration_errors(self):
		with self.assertRaises(ConfigurationError):
			concurrently.run([])
		with self.assertRaises(ConfigurationError):
			concurrently.run(["true"], kill_others=True, kill_others_on_fail=True)
		with self.assertRaises(ConfigurationError):
			concurrently.run(["true"], Options(), success="first")
		with self.assertRaises(ConfigurationError):
			Runner(["true"], Options(prefix="unknown"))

	def test_submit(self):
		out = Collector()
		future = concurrently.submit(["echo one", "exit 3"], writer=out)
		self.assertEqual(future.result(timeout=10), 3)
		self.assertIn("[0] one", out.lines)

	def test_submit_raises_configuration_errors(self):
		with self.assertRaises(ConfigurationError):
			concurrently.submit(["true"], success="sometimes")


if __name__ == "__main__":
	unittest.main()
# EOF
