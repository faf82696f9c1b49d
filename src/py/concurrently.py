#!/usr/bin/env python3
from __future__ import annotations
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future
from enum import Enum
from threading import Thread
from typing import Any, NamedTuple
import argparse
import datetime
import logging
import os
import queue
import select
import signal
import subprocess  # nosec: B404
import sys
import threading
import time

# --
# # Concurrently
#
# The `concurrently` module runs a list of shell commands at the same time,
# merges their output into a single labeled stream and reduces their exit
# codes to one aggregate exit code. Commands can be terminated together when
# one of them ends (`kill-others`) or fails (`kill-others-on-fail`), and
# termination signals received by the supervisor are relayed to every child.

__version__ = "1.0.0"

logger = logging.getLogger("concurrently")

type BytesConsumer = Callable[[bytes], None]
type CommandLike = str | CommandSpec | tuple[str, ...] | dict[str, Any]

STDOUT = 1
STDERR = 2

# Exit code of a command that could not be started at all, following the
# shell's "command not found" convention.
SPAWN_FAILURE_EXIT_CODE = 127
# Outcome of a command terminated by a signal, which has no exit code.
KILLED_EXIT_CODE = 1

READ_SIZE = 64_000
# Upper bound on how long the runner blocks waiting for an event, so that
# deadlines set from signal handlers are honoured.
TICK = 0.25


class ConfigurationError(ValueError):
	"""Raised when the run is misconfigured. Nothing is spawned."""


class StateError(RuntimeError):
	"""Raised on an invalid process record transition."""


# --
# ## Configuration


class KillPolicy(Enum):
	NONE = "none"
	KILL_OTHERS = "kill-others"
	KILL_OTHERS_ON_FAIL = "kill-others-on-fail"


class SuccessStrategy(Enum):
	ALL = "all"
	FIRST = "first"
	LAST = "last"


PREFIXES = ("index", "name", "pid", "command", "time", "none")


def parse_list(value: str | Iterable[str] | None, separator: str = ",") -> tuple[str, ...]:
	"""Splits a separated string (or passes through an iterable) into a tuple
	of stripped strings. Empty entries are kept so that positions match
	command ordinals."""
	if value is None:
		return ()
	items = value.split(separator) if isinstance(value, str) else value
	return tuple(str(_).strip() for _ in items)


def parse_signal(value: str | int | signal.Signals) -> signal.Signals:
	"""Resolves `SIGTERM`, `TERM`, `15` or a `signal.Signals` to a signal."""
	if isinstance(value, signal.Signals):
		return value
	try:
		if isinstance(value, int) or str(value).strip().isdigit():
			return signal.Signals(int(value))
		name = str(value).strip().upper()
		return signal.Signals[name if name.startswith("SIG") else f"SIG{name}"]
	except (KeyError, ValueError):
		raise ConfigurationError(f"Unknown signal: {value}") from None


class Options(NamedTuple):
	"""The resolved configuration of a run."""

	kill_policy: KillPolicy = KillPolicy.NONE
	success: SuccessStrategy = SuccessStrategy.ALL
	names: tuple[str, ...] = ()
	colors: tuple[str, ...] = ()
	# One of `PREFIXES`, `None` labels with the name when there is one and
	# the index otherwise.
	prefix: str | None = None
	prefix_length: int = 10
	timestamp_format: str = "%Y-%m-%d %H:%M:%S.%f"
	raw: bool = False
	no_color: bool = False
	hide: tuple[str, ...] = ()
	kill_signal: signal.Signals = signal.SIGTERM
	# When set, commands still running this many seconds after being
	# terminated receive SIGKILL.
	kill_timeout: float | None = None
	# How long a relayed signal gives the children to exit.
	grace: float = 5.0

	@classmethod
	def Make(
		cls,
		*,
		kill_others: bool = False,
		kill_others_on_fail: bool = False,
		success: str | SuccessStrategy = SuccessStrategy.ALL,
		names: str | Iterable[str] | None = None,
		name_separator: str = ",",
		colors: str | Iterable[str] | None = None,
		prefix: str | None = None,
		prefix_length: int = 10,
		timestamp_format: str = "%Y-%m-%d %H:%M:%S.%f",
		raw: bool = False,
		no_color: bool = False,
		hide: str | Iterable[str] | None = None,
		kill_signal: str | int | signal.Signals = signal.SIGTERM,
		kill_timeout: float | None = None,
		grace: float = 5.0,
	) -> Options:
		"""Builds options from loosely typed values, as given on the command
		line, raising `ConfigurationError` on anything invalid."""
		if kill_others and kill_others_on_fail:
			raise ConfigurationError(
				"--kill-others and --kill-others-on-fail are mutually exclusive"
			)
		if not name_separator:
			raise ConfigurationError("The name separator cannot be empty")
		try:
			strategy = SuccessStrategy(
				success.value if isinstance(success, SuccessStrategy) else success
			)
		except ValueError:
			raise ConfigurationError(
				f"Unknown success strategy: {success}, expected one of: "
				+ ", ".join(_.value for _ in SuccessStrategy)
			) from None
		try:
			prefix_length = int(prefix_length)
			kill_timeout = None if kill_timeout is None else float(kill_timeout)
			grace = float(grace)
		except (TypeError, ValueError) as e:
			raise ConfigurationError(f"Invalid numeric option: {e}") from None
		return cls(
			kill_policy=KillPolicy.KILL_OTHERS
			if kill_others
			else KillPolicy.KILL_OTHERS_ON_FAIL
			if kill_others_on_fail
			else KillPolicy.NONE,
			success=strategy,
			names=parse_list(names, name_separator),
			colors=parse_list(colors),
			prefix=prefix,
			prefix_length=prefix_length,
			timestamp_format=timestamp_format,
			raw=raw,
			no_color=no_color,
			hide=tuple(_ for _ in parse_list(hide) if _),
			kill_signal=parse_signal(kill_signal),
			kill_timeout=kill_timeout,
			grace=grace,
		).validate()

	def validate(self) -> Options:
		if not isinstance(self.kill_policy, KillPolicy):
			raise ConfigurationError(f"Invalid kill policy: {self.kill_policy!r}")
		if not isinstance(self.success, SuccessStrategy):
			raise ConfigurationError(f"Invalid success strategy: {self.success!r}")
		if self.prefix is not None and self.prefix not in PREFIXES:
			raise ConfigurationError(
				f"Unknown prefix: {self.prefix}, expected one of: {', '.join(PREFIXES)}"
			)
		for name, value, types in (
			("prefix length", self.prefix_length, (int,)),
			("kill timeout", self.kill_timeout, (int, float, type(None))),
			("grace period", self.grace, (int, float)),
		):
			if isinstance(value, bool) or not isinstance(value, types):
				raise ConfigurationError(f"Invalid {name}: {value!r}")
		if self.prefix_length < 0:
			raise ConfigurationError("The prefix length cannot be negative")
		if not isinstance(self.kill_signal, signal.Signals):
			raise ConfigurationError(f"Invalid kill signal: {self.kill_signal!r}")
		if self.kill_timeout is not None and self.kill_timeout < 0:
			raise ConfigurationError("The kill timeout cannot be negative")
		if self.grace < 0:
			raise ConfigurationError("The grace period cannot be negative")
		return self


# --
# ## Types


class CommandSpec(NamedTuple):
	"""An immutable description of one command of the run, `index` being its
	position in the command list."""

	index: int
	command: str
	name: str | None = None
	color: str | None = None


def make_specs(
	commands: CommandLike | Iterable[CommandLike], options: Options | None = None
) -> list[CommandSpec]:
	"""Normalizes the given command descriptors into specs indexed by position.
	Names and colors given in the options fill in the ones the descriptors
	do not carry."""
	options = options or Options()
	if isinstance(commands, (str, CommandSpec, dict)):
		commands = [commands]
	res: list[CommandSpec] = []
	for i, command in enumerate(commands):
		# NOTE: `CommandSpec` is a tuple, so it needs to be tested first
		if isinstance(command, CommandSpec):
			text, name, color = command.command, command.name, command.color
		elif isinstance(command, str):
			text, name, color = command, None, None
		elif isinstance(command, dict):
			text, name, color = (
				command.get("command"),
				command.get("name"),
				command.get("color"),
			)
		elif isinstance(command, (tuple, list)) and 1 <= len(command) <= 3:
			text, name, color = (tuple(command) + (None, None))[:3]
		else:
			raise ConfigurationError(f"Unsupported command descriptor: {command!r}")
		if not isinstance(text, str) or not text.strip():
			raise ConfigurationError(f"Command {i} is empty")
		res.append(
			CommandSpec(
				i,
				text,
				name or (options.names[i] if i < len(options.names) else None) or None,
				color or (options.colors[i] if i < len(options.colors) else None) or None,
			)
		)
	if not res:
		raise ConfigurationError("No commands given")
	return res


class Running(NamedTuple):
	pass


class Exited(NamedTuple):
	code: int


class Killed(NamedTuple):
	signame: str


type ProcessState = Running | Exited | Killed


class CompletionEvent(NamedTuple):
	"""The immutable snapshot of a process record at the moment it became
	terminal."""

	spec: CommandSpec
	pid: int | None
	state: Exited | Killed
	started: float
	ended: float

	@property
	def index(self) -> int:
		return self.spec.index

	@property
	def code(self) -> int | None:
		return self.state.code if isinstance(self.state, Exited) else None

	@property
	def signame(self) -> str | None:
		return self.state.signame if isinstance(self.state, Killed) else None

	@property
	def succeeded(self) -> bool:
		return isinstance(self.state, Exited) and self.state.code == 0

	@property
	def outcome(self) -> int:
		"""The exit code, or `KILLED_EXIT_CODE` when killed by a signal."""
		return self.state.code if isinstance(self.state, Exited) else KILLED_EXIT_CODE

	@property
	def duration(self) -> float:
		return self.ended - self.started


class ProcessRecord:
	"""Tracks the lifecycle of one command. Records go from `Running` to
	either `Exited` or `Killed`, exactly once."""

	def __init__(
		self, spec: CommandSpec, pid: int | None = None, started: float | None = None
	) -> None:
		self.spec: CommandSpec = spec
		self.pid: int | None = pid
		self.state: ProcessState = Running()
		self.started: float = time.time() if started is None else started
		self.ended: float | None = None

	@property
	def isRunning(self) -> bool:
		return isinstance(self.state, Running)

	def complete(
		self, state: Exited | Killed, ended: float | None = None
	) -> CompletionEvent:
		if not self.isRunning:
			raise StateError(
				f"Command {self.spec.index} already completed with {self.state}"
			)
		if not isinstance(state, (Exited, Killed)):
			raise StateError(f"Not a terminal state: {state!r}")
		self.state = state
		self.ended = time.time() if ended is None else ended
		return self.snapshot()

	def snapshot(self) -> CompletionEvent:
		if isinstance(self.state, Running) or self.ended is None:
			raise StateError(f"Command {self.spec.index} is still running")
		return CompletionEvent(self.spec, self.pid, self.state, self.started, self.ended)

	def __repr__(self) -> str:
		return f"<ProcessRecord {self.spec.index} pid={self.pid} {self.state}>"


class KillDecision:
	"""A flag set at most once per run, the first time the kill policy
	decides that the remaining commands must be terminated."""

	def __init__(self) -> None:
		self._lock = threading.Lock()
		self._isSet: bool = False
		self.cause: int | None = None

	@property
	def isSet(self) -> bool:
		return self._isSet

	def set(self, cause: int) -> bool:
		"""Sets the flag, returning `True` only for the call that set it."""
		with self._lock:
			if self._isSet:
				return False
			self._isSet = True
			self.cause = cause
			return True

	def __bool__(self) -> bool:
		return self._isSet


# --
# ## Events
#
# Reader threads communicate with the runner through a queue of events. For
# a given command, all its chunks are posted before its terminal event.


class Chunk(NamedTuple):
	index: int
	stream: int
	data: bytes


class Terminal(NamedTuple):
	index: int
	code: int | None
	signame: str | None = None


def decode_returncode(returncode: int) -> tuple[int | None, str | None]:
	"""Converts a `Popen.returncode` into an `(exit code, signal name)` pair,
	negative return codes meaning the process was killed by a signal."""
	if returncode >= 0:
		return returncode, None
	try:
		return None, signal.Signals(-returncode).name
	except ValueError:
		return None, f"SIG{-returncode}"


# --
# ## Process handle


class ProcessHandle:
	"""Owns one spawned shell process and the thread reading its output."""

	def __init__(
		self,
		spec: CommandSpec,
		events: queue.Queue[Chunk | Terminal],
		process: subprocess.Popen[bytes] | None = None,
	) -> None:
		self.spec: CommandSpec = spec
		self.events = events
		self.process: subprocess.Popen[bytes] | None = process
		self.pid: int | None = process.pid if process else None
		self.thread: Thread | None = None

	@classmethod
	def Spawn(
		cls, spec: CommandSpec, events: queue.Queue[Chunk | Terminal]
	) -> ProcessHandle:
		"""Starts the command through the shell. A command that cannot be
		started at all still yields a handle, which posts an immediate
		non-zero terminal event."""
		# NOTE: With `start_new_session`, the child and its own children
		# form a process group with the pid of the child, which is what
		# `terminate` signals.
		try:
			process = subprocess.Popen(  # nosec: B602
				spec.command,
				shell=True,
				stdin=subprocess.DEVNULL,
				stdout=subprocess.PIPE,
				stderr=subprocess.PIPE,
				bufsize=0,
				start_new_session=True,
			)
		except (OSError, ValueError) as e:
			# `ValueError` comes from command text the OS cannot take, like NUL bytes
			logger.warning("Could not start command %d (%s): %s", spec.index, spec.command, e)
			handle = cls(spec, events)
			events.put(Chunk(spec.index, STDERR, bytes(f"failed to start: {e}\n", "utf8")))
			events.put(Terminal(spec.index, SPAWN_FAILURE_EXIT_CODE))
			return handle
		handle = cls(spec, events, process)
		handle.thread = Thread(
			target=handle.reader_threaded,
			name=f"concurrently-{spec.index}",
			daemon=True,
		)
		handle.thread.start()
		logger.debug("Started command %d with pid %d: %s", spec.index, process.pid, spec.command)
		return handle

	def reader_threaded(self) -> None:
		"""Streams the process output as `Chunk` events, then posts its
		`Terminal` event once both pipes are drained and the process reaped."""
		process = self.process
		assert process is not None
		index = self.spec.index
		channels = dict(
			(_[0].fileno(), _[1])
			for _ in ((process.stdout, STDOUT), (process.stderr, STDERR))
			if _[0] is not None
		)
		while channels:
			try:
				ready = select.select(list(channels), [], [], TICK)[0]
			except (OSError, ValueError) as e:
				logger.warning("Stopped reading output of command %d: %s", index, e)
				break
			# A background descendant may keep the pipes open after the
			# process itself exited, in which case we stop once drained.
			if not ready and process.poll() is not None:
				break
			for fd in ready:
				try:
					chunk = os.read(fd, READ_SIZE)
				except OSError as e:
					logger.warning(
						"Stopped reading %s of command %d: %s",
						"stdout" if channels[fd] == STDOUT else "stderr",
						index,
						e,
					)
					chunk = b""
				if chunk:
					self.events.put(Chunk(index, channels[fd], chunk))
				else:
					del channels[fd]
		self.events.put(Terminal(index, *decode_returncode(process.wait())))

	def terminate(self, sig: signal.Signals = signal.SIGTERM) -> bool:
		"""Sends `sig` to the process group of the command without waiting,
		returning `True` when the signal was sent."""
		process = self.process
		if process is None or process.returncode is not None:
			return False
		try:
			os.killpg(process.pid, sig)
		except ProcessLookupError:
			return False
		except OSError:
			# May not have permission to signal the group, try the process
			try:
				os.kill(process.pid, sig)
			except OSError:
				return False
		return True

	def release(self) -> None:
		"""Releases the pipes once the reader thread is done with them."""
		if self.thread and self.thread.is_alive():
			self.thread.join(TICK)
			if self.thread.is_alive():
				logger.debug("Command %d is still being read, not releasing it", self.spec.index)
				return
		if self.process:
			for stream in (self.process.stdout, self.process.stderr):
				if stream:
					stream.close()


# --
# ## Output


def write_stdout(data: bytes) -> None:
	view = memoryview(data)
	while view:
		view = view[os.write(1, view) :]


def shorten(text: str, length: int) -> str:
	"""Shortens `text` to `length` characters, eliding its middle."""
	if length <= 0 or len(text) <= length:
		return text
	if length <= 2:
		return text[:length]
	keep = length - 2
	head = (keep + 1) // 2
	tail = keep - head
	return text[:head] + ".." + (text[-tail:] if tail else "")


class Formatter:
	"""Formats the prefix of the lines emitted for a command."""

	RESET = "\033[0m"

	# ANSI codes for style names, looked up in lower case
	COLORS = {
		"black": "30",
		"red": "31",
		"green": "32",
		"yellow": "33",
		"blue": "34",
		"magenta": "35",
		"cyan": "36",
		"white": "37",
		"gray": "90",
		"grey": "90",
		"bright_black": "90",
		"bright_red": "91",
		"bright_green": "92",
		"bright_yellow": "93",
		"bright_blue": "94",
		"bright_magenta": "95",
		"bright_cyan": "96",
		"bright_white": "97",
		"bgblack": "40",
		"bgred": "41",
		"bggreen": "42",
		"bgyellow": "43",
		"bgblue": "44",
		"bgmagenta": "45",
		"bgcyan": "46",
		"bgwhite": "47",
		"bold": "1",
		"dim": "2",
		"italic": "3",
		"underline": "4",
		"inverse": "7",
		"reset": "0",
	}
	# Aliases in the `redBright` form
	COLORS.update(
		{f"{k[len('bright_'):]}bright": v for k, v in COLORS.items() if k.startswith("bright_")}
	)

	@classmethod
	def Style(cls, style: str | None) -> str | None:
		"""Returns the escape sequence for a style such as `red`, `red.bold`
		or `FF8800`, or `None` when any part of it is unknown."""
		if not style:
			return None
		codes: list[str] = []
		for part in style.split("."):
			part = part.strip().lstrip("#")
			if part.lower() in cls.COLORS:
				codes.append(cls.COLORS[part.lower()])
			elif len(part) == 6 and all(c in "0123456789abcdefABCDEF" for c in part):
				r, g, b = (int(part[i : i + 2], 16) for i in (0, 2, 4))
				codes.append(f"38;2;{r};{g};{b}")
			else:
				return None
		return f"\033[{';'.join(codes)}m"

	def __init__(self, options: Options | None = None) -> None:
		self.options: Options = options or Options()

	@property
	def kind(self) -> str:
		return self.options.prefix or "name"

	def label(self, spec: CommandSpec, pid: int | None = None) -> str:
		kind = self.kind
		if kind == "name":
			return spec.name or str(spec.index)
		elif kind == "pid":
			return str(pid) if pid else str(spec.index)
		elif kind == "command":
			return shorten(spec.command, self.options.prefix_length)
		elif kind == "time":
			return datetime.datetime.now().strftime(self.options.timestamp_format)
		elif kind == "none":
			return ""
		else:
			return str(spec.index)

	def prefix(self, spec: CommandSpec, pid: int | None = None) -> bytes:
		if self.options.raw or self.kind == "none":
			return b""
		text = f"[{self.label(spec, pid)}]"
		style = None if self.options.no_color else self.Style(spec.color)
		if style:
			text = f"{style}{text}{self.RESET}"
		return bytes(f"{text} ", "utf8")


class Multiplexer:
	"""Splits the output chunks of every command into lines and writes them
	to a single sink, prefixed with the command's label. Lines of a given
	command keep their order, lines of different commands interleave in
	arrival order."""

	def __init__(
		self,
		formatter: Formatter,
		writer: BytesConsumer | None = None,
		hidden: Iterable[int] = (),
	) -> None:
		self.formatter = formatter
		self.writer: BytesConsumer = writer or write_stdout
		self.hidden: set[int] = set(hidden)
		self.muted: set[int] = set()
		self.pids: dict[int, int | None] = {}
		self.buffers: dict[tuple[int, int], bytearray] = {}

	def register(self, spec: CommandSpec, pid: int | None) -> None:
		self.pids[spec.index] = pid

	def feed(self, spec: CommandSpec, stream: int, data: bytes) -> None:
		buffer = self.buffers.setdefault((spec.index, stream), bytearray())
		buffer.extend(data)
		if (end := buffer.rfind(b"\n")) >= 0:
			lines = bytes(buffer[:end]).split(b"\n")
			del buffer[: end + 1]
			if spec.index not in self.hidden:
				for line in lines:
					self.emit(spec, line)

	def flush(self, spec: CommandSpec) -> None:
		"""Emits the unterminated fragments left for the given command."""
		for stream in (STDOUT, STDERR):
			buffer = self.buffers.pop((spec.index, stream), None)
			if buffer and spec.index not in self.hidden:
				self.emit(spec, bytes(buffer))

	def status(self, event: CompletionEvent) -> None:
		if self.formatter.options.raw:
			return
		if isinstance(event.state, Killed):
			message = f"{event.spec.command} terminated by {event.state.signame}"
		else:
			message = f"{event.spec.command} exited with code {event.state.code}"
		self.emit(event.spec, bytes(message, "utf8"))

	def emit(self, spec: CommandSpec, line: bytes) -> None:
		if spec.index in self.muted:
			return
		try:
			self.writer(self.formatter.prefix(spec, self.pids.get(spec.index)) + line + b"\n")
		except OSError as e:
			self.muted.add(spec.index)
			logger.warning("Stopped forwarding output of command %d: %s", spec.index, e)


# --
# ## Exit code


class ExitCodeResolver:
	"""Reduces the completions of a run to one exit code."""

	def __init__(self, strategy: SuccessStrategy = SuccessStrategy.ALL) -> None:
		self.strategy = strategy

	def resolve(self, completions: Sequence[CompletionEvent]) -> int:
		if not completions:
			raise ValueError("Cannot resolve an exit code without any completion")
		ordered = sorted(completions, key=lambda _: _.index)
		if [_.index for _ in ordered] != list(range(len(ordered))):
			raise ValueError(
				f"Expected one completion per command, got: {[_.index for _ in ordered]}"
			)
		if self.strategy is SuccessStrategy.FIRST:
			return ordered[0].outcome
		elif self.strategy is SuccessStrategy.LAST:
			return ordered[-1].outcome
		else:
			failed = next((_ for _ in ordered if not _.succeeded), None)
			return 0 if failed is None else failed.outcome


# --
# ## Signals


class SignalRelay:
	"""Relays the termination signals received by this process, unchanged,
	to the running commands of one run. Handlers are installed by `install`
	and the previous ones restored by `teardown`."""

	SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")

	def __init__(
		self,
		targets: Callable[[], Iterable[ProcessHandle]],
		onRelay: Callable[[signal.Signals, list[ProcessHandle]], None] | None = None,
	) -> None:
		self.targets = targets
		self.onRelay = onRelay
		self.previous: dict[signal.Signals, Any] = {}
		self.received: list[signal.Signals] = []

	@property
	def isInstalled(self) -> bool:
		return bool(self.previous)

	def install(self) -> bool:
		if self.previous:
			return True
		# Python only lets the main thread set signal handlers
		if threading.current_thread() is not threading.main_thread():
			logger.debug("Not relaying signals, not running on the main thread")
			return False
		for signame in self.SIGNALS:
			if hasattr(signal, signame):
				sig = getattr(signal, signame)
				try:
					self.previous[sig] = signal.signal(sig, self.onSignal)
				except (OSError, ValueError):
					# Signal not available on this platform
					pass
		return bool(self.previous)

	def teardown(self) -> None:
		for sig, handler in self.previous.items():
			try:
				signal.signal(sig, signal.SIG_DFL if handler is None else handler)
			except (OSError, ValueError) as e:
				logger.debug("Could not restore handler for %s: %s", sig.name, e)
		self.previous = {}

	def onSignal(self, signum: int, frame: object) -> None:
		sig = signal.Signals(signum)
		self.received.append(sig)
		self.forward(sig)

	def forward(self, sig: signal.Signals) -> list[ProcessHandle]:
		"""Sends `sig` to every running target, returning the signalled ones."""
		forwarded = [_ for _ in self.targets() if _.terminate(sig)]
		if self.onRelay:
			self.onRelay(sig, forwarded)
		return forwarded


# --
# ## Runner
#
# The runner spawns every command, then consumes the events posted by the
# reader threads on its own thread. It is the only writer of the records.


class Shutdown(NamedTuple):
	sig: signal.Signals
	deadline: float


class Runner:
	def __init__(
		self,
		commands: CommandLike | Iterable[CommandLike],
		options: Options | None = None,
		writer: BytesConsumer | None = None,
	) -> None:
		self.options: Options = (options or Options()).validate()
		self.specs: list[CommandSpec] = make_specs(commands, self.options)
		self.events: queue.Queue[Chunk | Terminal] = queue.Queue()
		self.multiplexer = Multiplexer(
			Formatter(self.options),
			writer,
			hidden=(
				_.index
				for _ in self.specs
				if str(_.index) in self.options.hide or (_.name and _.name in self.options.hide)
			),
		)
		self.records: dict[int, ProcessRecord] = {}
		self.handles: dict[int, ProcessHandle] = {}
		self.completions: dict[int, CompletionEvent] = {}
		self.decision = KillDecision()
		self.relay = SignalRelay(self.targets, self.onRelay)
		# Every signal sent to a command, as `(index, signal name)`
		self.signalled: list[tuple[int, str]] = []
		self.shutdown: Shutdown | None = None
		self.shutdownLogged: bool = False
		self.escalation: float | None = None
		self.phase: str = "pending"
		self.exitCode: int | None = None

	@property
	def running(self) -> list[ProcessRecord]:
		return [_ for _ in self.records.values() if _.isRunning]

	def targets(self) -> list[ProcessHandle]:
		return [self.handles[_.spec.index] for _ in self.running]

	def run(self) -> int:
		"""Runs every command to completion and returns the aggregate exit
		code. Command failures never raise."""
		if self.phase != "pending":
			raise StateError("A runner can only be run once")
		self.phase = "active"
		self.relay.install()
		try:
			self.start()
			self.loop()
			self.phase = "resolving"
			code = ExitCodeResolver(self.options.success).resolve(
				[self.completions[_.index] for _ in self.specs]
			)
		except BaseException:
			# Leave no orphans behind, whatever interrupted the run
			for record in self.running:
				self.signal(record.spec.index, self.options.kill_signal)
			raise
		finally:
			self.relay.teardown()
			for handle in self.handles.values():
				handle.release()
		self.exitCode = code
		self.phase = "done"
		logger.debug("Run done with exit code %d", code)
		return code

	def start(self) -> None:
		for spec in self.specs:
			handle = ProcessHandle.Spawn(spec, self.events)
			self.handles[spec.index] = handle
			self.records[spec.index] = ProcessRecord(spec, handle.pid)
			self.multiplexer.register(spec, handle.pid)
			# A signal relayed while spawning must reach late commands too
			if self.shutdown:
				self.signal(spec.index, self.shutdown.sig)

	def loop(self) -> None:
		while self.running:
			try:
				event = self.events.get(timeout=self.timeout())
			except queue.Empty:
				pass
			else:
				if isinstance(event, Chunk):
					self.multiplexer.feed(self.records[event.index].spec, event.stream, event.data)
				else:
					self.onTerminal(event)
			self.checkDeadlines()

	def timeout(self) -> float:
		now = time.monotonic()
		deadlines = [
			_ for _ in (self.escalation, self.shutdown and self.shutdown.deadline) if _
		]
		return max(0.0, min([TICK] + [_ - now for _ in deadlines]))

	def checkDeadlines(self) -> None:
		now = time.monotonic()
		if self.escalation is not None and now >= self.escalation:
			self.escalation = None
			for record in self.running:
				logger.debug("Command %d did not terminate, killing it", record.spec.index)
				self.signal(record.spec.index, signal.SIGKILL)
		if self.shutdown and not self.shutdownLogged:
			self.shutdownLogged = True
			logger.debug(
				"Relayed %s, waiting up to %ss for the commands to exit",
				self.shutdown.sig.name,
				self.options.grace,
			)
		if self.shutdown and now >= self.shutdown.deadline:
			for record in self.running:
				logger.warning(
					"Command %d still running after %ss, giving up on it",
					record.spec.index,
					self.options.grace,
				)
				self.complete(record, Killed(self.shutdown.sig.name))

	# --
	# ### Event handlers

	def onTerminal(self, event: Terminal) -> None:
		record = self.records[event.index]
		self.multiplexer.flush(record.spec)
		self.handles[event.index].release()
		if not record.isRunning:
			# The run gave up on this command after a relayed signal
			return
		completion = self.complete(
			record, Killed(event.signame) if event.signame else Exited(event.code or 0)
		)
		self.applyKillPolicy(completion)

	def onRelay(self, sig: signal.Signals, forwarded: list[ProcessHandle]) -> None:
		# NOTE: This runs in the signal handler, so it only records
		# what was sent and sets the deadline the loop checks and logs.
		self.signalled.extend((_.spec.index, sig.name) for _ in forwarded)
		if not self.shutdown:
			self.shutdown = Shutdown(sig, time.monotonic() + self.options.grace)
		if self.options.kill_timeout is not None and self.escalation is None:
			self.escalation = time.monotonic() + self.options.kill_timeout

	def complete(self, record: ProcessRecord, state: Exited | Killed) -> CompletionEvent:
		completion = record.complete(state)
		self.completions[record.spec.index] = completion
		self.multiplexer.status(completion)
		logger.debug("Command %d completed: %s", record.spec.index, state)
		return completion

	def applyKillPolicy(self, completion: CompletionEvent) -> None:
		policy = self.options.kill_policy
		if policy is KillPolicy.NONE or self.shutdown:
			return
		if policy is KillPolicy.KILL_OTHERS_ON_FAIL and completion.succeeded:
			return
		if not self.decision.set(completion.index):
			return
		remaining = self.running
		logger.debug(
			"Command %d completed with %s, terminating %d other(s)",
			completion.index,
			completion.state,
			len(remaining),
		)
		for record in remaining:
			self.signal(record.spec.index, self.options.kill_signal)
		if remaining and self.options.kill_timeout is not None:
			self.escalation = time.monotonic() + self.options.kill_timeout

	def signal(self, index: int, sig: signal.Signals) -> bool:
		if self.handles[index].terminate(sig):
			self.signalled.append((index, sig.name))
			return True
		return False


# --
# ## API


def run(
	commands: CommandLike | Iterable[CommandLike],
	options: Options | None = None,
	*,
	writer: BytesConsumer | None = None,
	**kwargs: Any,
) -> int:
	"""Runs the given commands concurrently and returns the aggregate exit
	code. Options can be given as an `Options` or as `Options.Make`
	keyword arguments."""
	return Runner(commands, _options(options, kwargs), writer).run()


def submit(
	commands: CommandLike | Iterable[CommandLike],
	options: Options | None = None,
	*,
	writer: BytesConsumer | None = None,
	**kwargs: Any,
) -> Future[int]:
	"""Like `run`, but runs in a background thread and returns a future of
	the exit code. Signals are not relayed outside of the main thread.
	Configuration errors are raised right away."""
	runner = Runner(commands, _options(options, kwargs), writer)
	future: Future[int] = Future()

	def target() -> None:
		if not future.set_running_or_notify_cancel():
			return
		try:
			future.set_result(runner.run())
		except Exception as e:
			future.set_exception(e)

	Thread(target=target, name="concurrently", daemon=True).start()
	return future


def _options(options: Options | None, kwargs: dict[str, Any]) -> Options | None:
	if kwargs and options is not None:
		raise ConfigurationError("Give either options or keyword arguments, not both")
	return Options.Make(**kwargs) if kwargs else options


def main(
	argv: list[str] | None = None, writer: BytesConsumer | None = None
) -> int:
	"""Parses the command line, runs the commands and returns the exit code."""
	oparser = argparse.ArgumentParser(
		prog="concurrently",
		description="Runs commands concurrently, merging their output",
	)
	oparser.add_argument(
		"commands",
		metavar="COMMANDS",
		type=str,
		nargs="+",
		help="The list of commands to run concurrently",
	)
	oparser.add_argument(
		"-V", "--version", action="version", version=f"%(prog)s {__version__}"
	)
	kill_group = oparser.add_mutually_exclusive_group()
	kill_group.add_argument(
		"-k",
		"--kill-others",
		action="store_true",
		default=False,
		help="Terminates the other commands once one of them exits",
	)
	kill_group.add_argument(
		"--kill-others-on-fail",
		action="store_true",
		default=False,
		help="Terminates the other commands once one of them fails",
	)
	oparser.add_argument(
		"-s",
		"--success",
		choices=[_.value for _ in SuccessStrategy],
		default=SuccessStrategy.ALL.value,
		help="Which exit code is returned: the first command's, the last "
		"command's, or zero only when all commands succeed (default)",
	)
	oparser.add_argument(
		"-n",
		"--names",
		type=str,
		default=None,
		help="Names used to label the commands, separated by --name-separator",
	)
	oparser.add_argument(
		"--name-separator",
		type=str,
		default=",",
		help="The separator of --names, defaults to ','",
	)
	oparser.add_argument(
		"-c",
		"--prefix-colors",
		type=str,
		default=None,
		dest="colors",
		help="Comma-separated styles for the labels, like 'red,blue.bold'",
	)
	oparser.add_argument(
		"-p",
		"--prefix",
		choices=PREFIXES,
		default=None,
		help="What labels the lines, defaults to the name or the index",
	)
	oparser.add_argument(
		"-l",
		"--prefix-length",
		type=int,
		default=10,
		help="Length of the command label when --prefix=command",
	)
	oparser.add_argument(
		"-t",
		"--timestamp-format",
		type=str,
		default="%Y-%m-%d %H:%M:%S.%f",
		help="The strftime format of the label when --prefix=time",
	)
	oparser.add_argument(
		"-r",
		"--raw",
		action="store_true",
		default=False,
		help="Outputs only the commands' raw output",
	)
	oparser.add_argument(
		"--no-color",
		action="store_true",
		default=False,
		help="Disables the label styles",
	)
	oparser.add_argument(
		"--hide",
		type=str,
		default=None,
		help="Comma-separated indexes or names of commands whose output is hidden",
	)
	oparser.add_argument(
		"--kill-signal",
		type=str,
		default="SIGTERM",
		help="The signal sent to terminate the other commands, defaults to SIGTERM",
	)
	oparser.add_argument(
		"--kill-timeout",
		type=float,
		default=None,
		help="Sends SIGKILL to commands still running this many seconds after "
		"being terminated",
	)
	oparser.add_argument(
		"--grace",
		type=float,
		default=5.0,
		help="Seconds given to the commands to exit after a relayed signal",
	)
	oparser.add_argument(
		"-v",
		"--verbose",
		action="store_true",
		default=False,
		help="Logs debugging information to stderr",
	)
	args = oparser.parse_args(args=sys.argv[1:] if argv is None else argv)
	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.WARNING,
		format="%(name)s: %(levelname)s: %(message)s",
	)
	try:
		runner = Runner(
			args.commands,
			Options.Make(
				kill_others=args.kill_others,
				kill_others_on_fail=args.kill_others_on_fail,
				success=args.success,
				names=args.names,
				name_separator=args.name_separator,
				colors=args.colors,
				prefix=args.prefix,
				prefix_length=args.prefix_length,
				timestamp_format=args.timestamp_format,
				raw=args.raw,
				no_color=args.no_color,
				hide=args.hide,
				kill_signal=args.kill_signal,
				kill_timeout=args.kill_timeout,
				grace=args.grace,
			),
			writer,
		)
	except ConfigurationError as e:
		oparser.error(str(e))
	return runner.run()


def cli(argv: list[str] | None = None) -> None:
	"""The command-line interface of this module."""
	sys.exit(main(argv))


if __name__ == "__main__":
	cli()
# EOF
