#!/usr/bin/env python3.13
from __future__ import annotations
from collections.abc import Callable, Iterable, Mapping
from threading import Thread
from typing import IO, NamedTuple
import logging
import os
import signal
import subprocess  # nosec: B404
import sys
import threading

# --
# # Run All
#
# The `runall` module runs several commands at once and merges their
# output into the terminal. Each line is prefixed with the alias of the
# command it comes from and painted in that command's color. Lines are
# written whole, so output from different commands never interleaves
# mid-line.


# --
# ## Types

type BytesConsumer = Callable[[bytes], None]
type LineConsumer = Callable[[str], None]

STDOUT: int = 1
STDERR: int = 2
STREAMS = {STDOUT: "stdout", STDERR: "stderr"}

# 256-color indices, assigned by launch order
PALETTE: tuple[int, ...] = (14, 13, 12, 11, 10, 9, 1, 2, 3, 4, 5, 6)

USAGE = "Usage: {prog} [{{-a|--alias}} <alias>] <command> ..."

logger = logging.getLogger("runall")


class ParseError(ValueError):
	"""Raised when the command line cannot be turned into commands."""


class ConfigError(ValueError):
	"""Raised when an environment setting has an invalid value."""


class DecodeError(ValueError):
	"""Raised when a line of child output is not valid text."""


class SpawnError(RuntimeError):
	"""Raised when one or more commands could not be started. The
	`failures` list holds `(command, error)` pairs."""

	def __init__(self, failures: list[tuple[Command, OSError]]) -> None:
		self.failures = failures
		super().__init__(
			"; ".join(
				f"Could not start program '{command.program}' ({error})"
				for command, error in failures
			)
		)


class Command(NamedTuple):
	"""Describes one command to launch."""

	alias: str
	program: str
	args: tuple[str, ...] = ()

	@property
	def argv(self) -> list[str]:
		return [self.program, *self.args]


# --
# ## Parsing
#
# The command line is a sequence of `[-a ALIAS] COMMAND` groups, where
# `COMMAND` is a single argument holding the program and its arguments
# separated by whitespace. There is no quoting.

INITIAL = "initial"
PENDING_ALIAS = "pending-alias"
HAS_ALIAS = "has-alias"


def parse_command(text: str, alias: str | None = None) -> Command:
	"""Splits a command string into a `Command`, using the program name
	as alias when none is given."""
	parts = text.split()
	if not parts:
		raise ParseError(f"Could not parse command string: {text}")
	program, *args = parts
	return Command(alias if alias is not None else program, program, tuple(args))


def parse(args: Iterable[str]) -> list[Command]:
	"""Parses the command-line arguments (without the program name) into
	the list of commands to run. An empty list is a valid result."""
	commands: list[Command] = []
	state: str = INITIAL
	alias: str | None = None
	for arg in args:
		if arg in ("-a", "--alias"):
			if state == PENDING_ALIAS:
				raise ParseError("Alias expected")
			elif state == HAS_ALIAS:
				raise ParseError("Command expected")
			state = PENDING_ALIAS
		elif arg.startswith("-"):
			raise ParseError(f"Unexpected argument: {arg}")
		elif state == PENDING_ALIAS:
			alias = arg
			state = HAS_ALIAS
		else:
			commands.append(parse_command(arg, alias))
			alias = None
			state = INITIAL
	if state == PENDING_ALIAS:
		raise ParseError("Alias expected")
	elif state == HAS_ALIAS:
		raise ParseError("Command expected")
	return commands


# --
# ## Configuration
#
# The command line only accepts aliases and commands, so the few settings
# there are come from the environment.

COLOR_MODES = ("always", "never", "auto")


class Config(NamedTuple):
	color: str = "always"
	log_level: int = logging.WARNING
	graceful_timeout: float = 5.0

	@classmethod
	def FromEnvironment(cls, environ: Mapping[str, str] | None = None) -> Config:
		environ = os.environ if environ is None else environ
		color = environ.get("RUNALL_COLOR", "").strip().lower()
		if not color:
			color = "never" if environ.get("NO_COLOR") else "always"
		elif color not in COLOR_MODES:
			raise ConfigError(
				f"Invalid RUNALL_COLOR value: {color} (expected one of {', '.join(COLOR_MODES)})"
			)
		level_name = environ.get("RUNALL_LOG_LEVEL", "WARNING").strip().upper()
		level = logging.getLevelNamesMapping().get(level_name)
		if level is None:
			raise ConfigError(f"Invalid RUNALL_LOG_LEVEL value: {level_name}")
		timeout_str = environ.get("RUNALL_TIMEOUT", "").strip()
		try:
			timeout = float(timeout_str) if timeout_str else cls._field_defaults["graceful_timeout"]
		except ValueError:
			raise ConfigError(f"Invalid RUNALL_TIMEOUT value: {timeout_str}") from None
		if timeout < 0:
			raise ConfigError(f"Invalid RUNALL_TIMEOUT value: {timeout_str}")
		return cls(color, level, timeout)

	def colors(
		self, isatty: Callable[[int], bool] = os.isatty
	) -> dict[int, bool]:
		"""Tells for each destination whether lines should be painted."""
		if self.color == "auto":
			return {fd: isatty(fd) for fd in (STDOUT, STDERR)}
		enabled = self.color == "always"
		return {STDOUT: enabled, STDERR: enabled}


# --
# ## Output
#
# Every line goes through a single `OutputGate`. Its lock covers both
# stdout and stderr, as some terminals mix up color escape sequences when
# the two streams interleave.


def color_for(index: int) -> int:
	return PALETTE[index % len(PALETTE)]


def pad_alias(alias: str, width: int) -> str:
	"""Returns the `[alias]` prefix, right-padded so that prefixes of
	aliases up to `width` characters line up."""
	return f"[{alias}]".ljust(width + 2)


def writeall(fd: int, data: bytes) -> None:
	"""Writes all of `data` to the file descriptor, as `os.write` may
	write only part of it."""
	view = memoryview(data)
	while view:
		view = view[os.write(fd, view) :]


class Formatter:
	"""Formats lines of child output."""

	RESET = "\033[0m"

	def __init__(self, colors: Mapping[int, bool] | bool = True) -> None:
		self.colors: dict[int, bool] = (
			{STDOUT: colors, STDERR: colors}
			if isinstance(colors, bool)
			else dict(colors)
		)

	def paint(self, text: str, color: int | None) -> str:
		if color is None:
			return text
		return f"\033[38;5;{color}m{text}{self.RESET}"

	def line(self, stream: int, prefix: str, text: str, color: int | None) -> bytes:
		line = f"{prefix} {text}"
		if self.colors.get(stream, False):
			line = self.paint(line, color)
		return bytes(f"{line}\n", "utf8")


class OutputGate:
	"""Serializes writes to stdout and stderr, one whole line at a time."""

	def __init__(
		self,
		formatter: Formatter | None = None,
		writers: Mapping[int, BytesConsumer] | None = None,
	) -> None:
		self.formatter: Formatter = formatter or Formatter()
		self.writers: dict[int, BytesConsumer] = dict(
			writers
			or {
				STDOUT: lambda data: writeall(STDOUT, data),
				STDERR: lambda data: writeall(STDERR, data),
			}
		)
		self.lock = threading.RLock()

	def write(self, stream: int, data: bytes) -> None:
		with self.lock:
			self.writers[stream](data)

	def line(self, stream: int, prefix: str, text: str, color: int | None) -> None:
		with self.lock:
			self.writers[stream](self.formatter.line(stream, prefix, text, color))


class GateHandler(logging.Handler):
	"""A logging handler that writes records through the `OutputGate`, so
	that diagnostics never tear a line of child output."""

	def __init__(self, gate: OutputGate, stream: int = STDERR) -> None:
		super().__init__()
		self.gate = gate
		self.stream = stream

	def emit(self, record: logging.LogRecord) -> None:
		try:
			self.gate.write(self.stream, bytes(f"{self.format(record)}\n", "utf8"))
		except Exception:
			self.handleError(record)


def configure_logging(gate: OutputGate, level: int = logging.WARNING) -> logging.Logger:
	for handler in list(logger.handlers):
		if isinstance(handler, GateHandler):
			logger.removeHandler(handler)
	handler = GateHandler(gate)
	handler.setFormatter(logging.Formatter("run-all: %(levelname)s: %(message)s"))
	logger.addHandler(handler)
	logger.setLevel(level)
	logger.propagate = False
	return logger


# --
# ## Reading


def strip_eol(line: bytes) -> bytes:
	if line.endswith(b"\n"):
		line = line[:-1]
		if line.endswith(b"\r"):
			line = line[:-1]
	return line


def read_lines(pipe: IO[bytes], consumer: LineConsumer, encoding: str = "utf8") -> int:
	"""Reads `pipe` until end of stream, passing each decoded line without its
	terminator to `consumer`. A trailing line with no terminator is passed
	too. Returns the number of lines read."""
	count = 0
	for raw in pipe:
		try:
			line = str(strip_eol(raw), encoding)
		except UnicodeDecodeError as e:
			raise DecodeError(f"Could not decode line {count + 1}: {e.reason}") from e
		consumer(line)
		count += 1
	return count


def drain(pipe: IO[bytes]) -> None:
	"""Discards whatever is left in the pipe, so that the writer on the
	other end never blocks."""
	while pipe.read(64_000):
		pass


# --
# ## Processes


class Process:
	"""A command that was started, along with the threads reading its
	output."""

	def __init__(
		self, command: Command, index: int, popen: subprocess.Popen[bytes]
	) -> None:
		self.command: Command = command
		self.index: int = index
		self.color: int = color_for(index)
		self.popen: subprocess.Popen[bytes] = popen
		self.readers: list[Thread] = []
		self.failures: list[Exception] = []
		self.returncode: int | None = None

	@property
	def alias(self) -> str:
		return self.command.alias

	@property
	def pid(self) -> int:
		return self.popen.pid

	@property
	def isRunning(self) -> bool:
		return self.popen.poll() is None

	def pipe(self, stream: int) -> IO[bytes] | None:
		return self.popen.stdout if stream == STDOUT else self.popen.stderr


def exit_status(returncode: int) -> int:
	# A child killed by signal N reports -N
	return 128 - returncode if returncode < 0 else returncode


# --
# ## Runner
#
# The runner spawns the commands, starts two reader threads per command
# and waits for all of them to reach the end of their streams.


class Runner:
	SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")

	def __init__(self, gate: OutputGate, graceful_timeout: float = 5.0) -> None:
		self.gate: OutputGate = gate
		self.processes: list[Process] = []
		self.width: int = 0
		self.graceful_timeout: float = graceful_timeout
		self.signalled: int = 0
		self._handlers: dict[int, object] = {}

	# --
	# ### Spawning

	def spawn(self, commands: list[Command]) -> list[Process]:
		"""Starts every command. When any of them fails to start, the ones
		that did start are terminated and a `SpawnError` is raised."""
		self.width = max((len(_.alias) for _ in commands), default=0)
		failures: list[tuple[Command, OSError]] = []
		for index, command in enumerate(commands):
			try:
				popen = subprocess.Popen(  # nosec: B603
					command.argv,
					stdin=subprocess.DEVNULL,
					stdout=subprocess.PIPE,
					stderr=subprocess.PIPE,
				)
			except OSError as e:
				logger.debug(f"Could not start program '{command.program}' ({e})")
				failures.append((command, e))
				continue
			logger.debug(f"[{command.alias}] started {command.argv} as pid {popen.pid}")
			self.processes.append(Process(command, index, popen))
		if failures:
			self.terminate()
			for process in self.processes:
				for stream in STREAMS:
					if pipe := process.pipe(stream):
						pipe.close()
			raise SpawnError(failures)
		return self.processes

	# --
	# ### Reading

	def start(self) -> list[Thread]:
		"""Starts the stdout and stderr readers of every process."""
		threads = []
		for process in self.processes:
			for stream in STREAMS:
				thread = Thread(
					target=self.doRead,
					args=(process, stream),
					name=f"{process.alias}:{STREAMS[stream]}",
				)
				thread.start()
				process.readers.append(thread)
				threads.append(thread)
		return threads

	def doRead(self, process: Process, stream: int) -> None:
		pipe = process.pipe(stream)
		if pipe is None:
			return
		prefix = pad_alias(process.alias, self.width)
		name = f"[{process.alias}] {STREAMS[stream]}"
		logger.debug(f"{name}: reading")
		try:
			count = read_lines(
				pipe, lambda line: self.gate.line(stream, prefix, line, process.color)
			)
			logger.debug(f"{name}: end of stream after {count} lines")
		except DecodeError as e:
			process.failures.append(e)
			logger.error(f"{name}: {e}")
			drain(pipe)
		except OSError as e:
			# Our own output is gone: closing the pipe lets the child see it too
			process.failures.append(e)
			logger.error(f"{name}: {e}")
		finally:
			pipe.close()

	# --
	# ### Joining, terminating

	def join(self) -> int:
		"""Waits for every reader to finish, reaps the children and
		returns the combined exit status."""
		for process in self.processes:
			for thread in process.readers:
				thread.join()
		for process in self.processes:
			process.returncode = process.popen.wait()
			if process.returncode:
				logger.warning(f"[{process.alias}] exited with code {process.returncode}")
			else:
				logger.info(f"[{process.alias}] exited with code 0")
		return self.status

	@property
	def status(self) -> int:
		if any(_.failures for _ in self.processes):
			return 1
		for process in self.processes:
			if process.returncode:
				return exit_status(process.returncode)
		return 0

	def terminate(self, graceful: bool = True) -> bool:
		"""Terminates the running children, with SIGTERM first when
		`graceful`, then with SIGKILL for those still running after the
		grace period. Returns `True` when all children are gone."""
		running = [_ for _ in self.processes if _.isRunning]
		if graceful:
			for process in running:
				process.popen.terminate()
			for process in running:
				try:
					process.popen.wait(timeout=self.graceful_timeout)
				except subprocess.TimeoutExpired:
					logger.warning(f"[{process.alias}] did not terminate, killing it")
			running = [_ for _ in running if _.isRunning]
		for process in running:
			process.popen.kill()
		for process in running:
			try:
				process.popen.wait(timeout=self.graceful_timeout)
			except subprocess.TimeoutExpired:
				logger.error(f"[{process.alias}] could not be killed (pid {process.pid})")
		return not any(_.isRunning for _ in self.processes)

	def kill(self) -> None:
		"""Sends SIGKILL to the children without waiting on them. This is
		what signal handlers use, as the main thread may already be inside
		`Popen.wait` and reaping is left to `join`."""
		for process in self.processes:
			if process.popen.returncode is None:
				try:
					process.popen.send_signal(signal.SIGKILL)
				except ProcessLookupError:
					pass

	# --
	# ### Signals
	#
	# The first signal is relayed to the children, which then exit and
	# close their pipes. A second one kills them.

	def registerSignals(self) -> None:
		for signame in self.SIGNALS:
			if hasattr(signal, signame):
				sig = getattr(signal, signame)
				try:
					self._handlers[sig] = signal.signal(sig, self.onSignal)
				except (OSError, ValueError):
					# Not available on this platform, or not the main thread
					pass

	def unregisterSignals(self) -> None:
		for sig, handler in self._handlers.items():
			signal.signal(sig, signal.SIG_DFL if handler is None else handler)
		self._handlers = {}

	def propagateSignal(self, signum: int) -> None:
		for process in self.processes:
			if process.isRunning:
				try:
					process.popen.send_signal(signum)
				except ProcessLookupError:
					pass

	def onSignal(self, signum: int, frame: object) -> None:
		self.signalled += 1
		signame = signal.Signals(signum).name
		if self.signalled == 1:
			logger.warning(f"Received {signame}, forwarding it to the running commands")
			self.propagateSignal(signum)
		else:
			logger.warning(f"Received {signame} again, killing the running commands")
			self.kill()


# --
# ## Command-line interface


def main(
	argv: list[str],
	*,
	prog: str = "run-all",
	gate: OutputGate | None = None,
	environ: Mapping[str, str] | None = None,
	signals: bool = True,
) -> int:
	"""Runs the commands given on the command line and returns the exit
	status."""

	def error(message: str) -> None:
		(gate or OutputGate()).write(STDERR, bytes(f"Error: {message}\n", "utf8"))

	try:
		config = Config.FromEnvironment(environ)
	except ConfigError as e:
		error(str(e))
		return 1
	try:
		commands = parse(argv)
	except ParseError as e:
		error(str(e))
		return 1
	if not commands:
		error("Expected at least one command to run")
		(gate or OutputGate()).write(
			STDERR, bytes(USAGE.format(prog=prog) + "\n", "utf8")
		)
		return 1

	gate = gate or OutputGate(Formatter(config.colors()))
	configure_logging(gate, config.log_level)
	runner = Runner(gate, graceful_timeout=config.graceful_timeout)
	try:
		runner.spawn(commands)
	except SpawnError as e:
		for command, failure in e.failures:
			error(f"Could not start program '{command.program}' ({failure})")
		return 1
	if signals:
		runner.registerSignals()
	try:
		runner.start()
		return runner.join()
	finally:
		runner.unregisterSignals()


def cli(argv: list[str] | None = None) -> None:
	"""The command-line interface of this module."""
	sys.exit(
		main(
			sys.argv[1:] if argv is None else argv,
			prog=os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "run-all",
		)
	)


if __name__ == "__main__":
	cli()
# EOF
