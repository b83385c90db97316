#!/usr/bin/env python3.13
from __future__ import annotations
from collections.abc import Callable, Iterable, Iterator, Mapping
from enum import Enum
from pathlib import Path
from threading import Thread
from types import MappingProxyType
from typing import NamedTuple
import argparse
import errno
import logging
import os
import signal
import subprocess  # nosec: B404
import sys
import threading
import zlib

# --
# # Shunt
#
# The `shunt` module supervises a set of named, long running commands
# (servers, watchers, build daemons), launching them all at once and
# merging their output into a single console stream where each line is
# prefixed with the (colored) name of the command that produced it.
#
# Each process gets one thread that reads its output and one thread that
# waits for it to exit. Interrupt and terminate signals received by the
# supervisor are relayed to the children from a dedicated thread.

log = logging.getLogger("shunt")

Writer = Callable[[bytes], object]

# Size of the chunks read from a process output
READ_SIZE = 64_000


# --
# ## Errors


class ShuntError(Exception):
	pass


class DescriptorError(ShuntError, ValueError):
	"""Raised when a command descriptor holds invalid launch parameters."""


class LaunchError(ShuntError):
	def __init__(self, name: str, message: str) -> None:
		super().__init__(message)
		self.name = name


class EmptyCommand(LaunchError):
	def __init__(self, name: str) -> None:
		super().__init__(name, f'command "{name}" was empty')


class SpawnFailed(LaunchError):
	def __init__(self, name: str, cause: OSError | ValueError) -> None:
		super().__init__(name, f'command "{name}" failed to spawn: {cause}')
		self.cause = cause


class SupervisorError(ShuntError):
	pass


class ConsoleClosed(ShuntError):
	"""The shared console can't be written to anymore."""


# --
# ## Command descriptors
#
# A descriptor is the validated, immutable set of launch parameters of
# one command. Descriptors are usually built by `shuntconf` out of a
# configuration file.


class TTYMode(Enum):
	AUTO = "auto"
	ALWAYS = "always"
	NEVER = "never"

	@classmethod
	def parse(cls, value: TTYMode | str | bool | None) -> TTYMode:
		if isinstance(value, TTYMode):
			return value
		if value is None:
			return cls.AUTO
		if isinstance(value, bool):
			return cls.ALWAYS if value else cls.NEVER
		try:
			return cls(str(value).strip().lower())
		except ValueError:
			choices = ", ".join(_.value for _ in cls)
			raise DescriptorError(
				f"invalid tty mode {value!r}, expected one of: {choices}"
			) from None

	def wraps(self, is_tty: bool) -> bool:
		"""Tells if a pseudo-terminal should be allocated, given that the
		supervisor output is (or is not) a terminal."""
		return self is TTYMode.ALWAYS or (self is TTYMode.AUTO and is_tty)


class CommandDescriptor(NamedTuple):
	name: str
	argv: tuple[str, ...]
	workdir: Path
	tty: TTYMode = TTYMode.AUTO
	env: Mapping[str, str | None] = MappingProxyType({})

	@classmethod
	def create(
		cls,
		name: str,
		argv: Iterable[str],
		workdir: Path | str | None = None,
		tty: TTYMode | str | bool | None = TTYMode.AUTO,
		env: Mapping[str, str | None] | None = None,
	) -> CommandDescriptor:
		"""Creates a validated descriptor. Note that an empty `argv` is
		accepted here: it is reported as an `EmptyCommand` at launch, so
		that the other commands are still started."""
		if not isinstance(name, str) or not name.strip():
			raise DescriptorError(f"command name must be a non-empty string: {name!r}")
		if isinstance(argv, (str, bytes)):
			raise DescriptorError(
				f'command "{name}": argv must be a list of strings, not a string'
			)
		try:
			args = tuple(argv)
		except TypeError:
			raise DescriptorError(
				f'command "{name}": argv must be a list of strings'
			) from None
		for arg in args:
			if not isinstance(arg, str):
				raise DescriptorError(
					f'command "{name}": argument {arg!r} is not a string'
				)
		path = Path.cwd() if workdir is None else Path(workdir)
		if not path.is_absolute():
			path = Path.cwd() / path
		overrides: dict[str, str | None] = {}
		for key, value in (env or {}).items():
			if not isinstance(key, str) or not key or "=" in key:
				raise DescriptorError(
					f'command "{name}": invalid environment variable name {key!r}'
				)
			if value is not None and not isinstance(value, str):
				raise DescriptorError(
					f'command "{name}": environment variable {key} must be a string or null'
				)
			overrides[key] = value
		return cls(name, args, path, TTYMode.parse(tty), MappingProxyType(overrides))

	def environ(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
		"""Returns the environment of the process: the inherited `base`
		(defaults to `os.environ`) with the overrides applied, `None`
		values removing the variable."""
		res = dict(os.environ if base is None else base)
		for key, value in self.env.items():
			if value is None:
				res.pop(key, None)
			else:
				res[key] = value
		return res


# --
# ## Colors
#
# Colors are only assigned when the supervisor writes to a terminal.


class ColorAssigner:
	"""Picks a color for each process name, either by cycling through the
	palette in launch order (`cycle`) or by hashing the name (`hash`), which
	is stable across runs."""

	PALETTE = ("green", "red", "cyan", "magenta", "yellow")
	POLICIES = ("cycle", "hash")

	def __init__(
		self, palette: tuple[str, ...] = PALETTE, policy: str = "cycle"
	) -> None:
		if not palette:
			raise ValueError("color palette can't be empty")
		if policy not in self.POLICIES:
			raise ValueError(f"unknown color policy: {policy}")
		self.palette = palette
		self.policy = policy
		self.counter = 0
		self.lock = threading.Lock()

	def assign(self, name: str) -> str:
		if self.policy == "hash":
			return self.palette[zlib.crc32(name.encode("utf8")) % len(self.palette)]
		with self.lock:
			i = self.counter
			self.counter += 1
		return self.palette[i % len(self.palette)]


def stdout_is_tty() -> bool:
	"""Tells if *our* standard output is attached to a terminal."""
	try:
		return os.isatty(sys.stdout.fileno())
	except (AttributeError, ValueError, OSError):
		return False


# --
# ## Console
#
# The console is the only resource shared by all the processes. Each line
# is written as a single critical section, so that the prefix of one
# process never gets interleaved with the output of another one.


class ProcessInfo(NamedTuple):
	name: str
	color: str | None = None


class Console:
	# ANSI color codes for named colors
	COLORS = {
		"black": "30",
		"red": "31",
		"green": "32",
		"yellow": "33",
		"blue": "34",
		"magenta": "35",
		"cyan": "36",
		"white": "37",
		"bright_black": "90",
		"bright_red": "91",
		"bright_green": "92",
		"bright_yellow": "93",
		"bright_blue": "94",
		"bright_magenta": "95",
		"bright_cyan": "96",
		"bright_white": "97",
	}
	RESET = "\033[0m"

	def __init__(self, fd: int = 1, writer: Writer | None = None) -> None:
		self.fd = fd
		self.writer = writer
		self.lock = threading.Lock()

	def colorCode(self, color: str | None) -> str:
		code = self.COLORS.get(color.lower()) if color else None
		return f"\033[{code}m" if code else ""

	def prefix(self, info: ProcessInfo) -> bytes:
		key = f"[{info.name}] "
		code = self.colorCode(info.color)
		return bytes(f"{code}{key}{self.RESET}" if code else key, "utf8")

	def line(self, info: ProcessInfo, body: bytes) -> bool:
		"""Writes the given line body prefixed with the process name. Returns
		`False` when the line was dropped because of a write error."""
		return self.write(self.prefix(info) + body + b"\n")

	def message(self, text: str) -> bool:
		return self.write(bytes(f"{text}\n", "utf8"))

	def write(self, data: bytes) -> bool:
		with self.lock:
			view = memoryview(data)
			try:
				if self.writer:
					self.writer(data)
				else:
					while view:
						view = view[os.write(self.fd, view) :]
			except BrokenPipeError as e:
				raise ConsoleClosed(str(e)) from e
			except OSError as e:
				if e.errno == errno.EBADF:
					raise ConsoleClosed(str(e)) from e
				log.debug("Dropped console line: %s", e)
				if not self.writer and 0 < len(view) < len(data):
					self.endLine()
				return False
		return True

	def endLine(self) -> None:
		"""Terminates a line that was only partially written, so that the
		next one starts on its own line."""
		try:
			os.write(self.fd, b"\n")
		except OSError as e:
			log.debug("Could not terminate truncated console line: %s", e)


# --
# ## Output multiplexing


def readlines(
	fd: int, size: int = READ_SIZE, limit: int = READ_SIZE, crlf: bool = False
) -> Iterator[bytes]:
	"""Lazily reads lines out of the given file descriptor, until it is
	closed. The `\\n` terminators are stripped and, with `crlf`, so is the
	`\\r` that pseudo-terminals add before them. A trailing unterminated
	line is still yielded once the stream ends.

	Output that goes past `limit` bytes without a newline (progress bars
	redrawn with `\\r`) is yielded as is, so that it still shows up."""
	pending = b""
	while True:
		try:
			chunk = os.read(fd, size)
		except OSError:
			# A pseudo-terminal whose slave got closed reports EIO instead
			# of an end of file: that's how we're expected to stop.
			chunk = b""
		if not chunk:
			break
		*lines, pending = (pending + chunk).split(b"\n")
		for line in lines:
			yield line[:-1] if crlf and line.endswith(b"\r") else line
		if len(pending) >= limit:
			yield pending
			pending = b""
	if pending:
		yield pending[:-1] if crlf and pending.endswith(b"\r") else pending


def multiplex(
	info: ProcessInfo, fd: int, console: Console, crlf: bool = False
) -> int:

	"""Copies the lines read from `fd` to the console, prefixed with the
	process name. The descriptor is owned by this function and is always
	closed on return. Returns the number of lines read.

	Once the console is closed, the output is still read (and discarded)
	so that the process never blocks on a full pipe."""
	count = 0
	closed = False
	try:
		for line in readlines(fd, crlf=crlf):
			count += 1
			if closed:
				continue
			try:
				console.line(info, line)
			except ConsoleClosed as e:
				log.warning("%s: console closed, discarding output (%s)", info.name, e)
				closed = True
	finally:
		os.close(fd)
	return count


# --
# ## Processes
#
# A `Process` is created by `launch`. Its output descriptor is handed over
# to the output thread, while the process itself is only ever waited on
# by the lifecycle thread.


class Process:
	def __init__(
		self,
		info: ProcessInfo,
		child: subprocess.Popen[bytes],
		output: int,
		transport: str,
		pgid: int | None = None,
	) -> None:
		self.info = info
		self.child = child
		self.output = output
		self.transport = transport
		# NOTE: With start_new_session, the process group id is the pid
		self.pgid = pgid
		self.drained = threading.Event()
		self.waited = False
		self.lock = threading.Lock()

	@property
	def name(self) -> str:
		return self.info.name

	@property
	def pid(self) -> int:
		return self.child.pid

	@property
	def returncode(self) -> int | None:
		return self.child.returncode

	def wait(self) -> int:
		"""Blocks until the process exits and reaps it. This must be called
		exactly once."""
		with self.lock:
			if self.waited:
				raise RuntimeError(f"process {self.name} was already waited on")
			self.waited = True
		return self.child.wait()

	def signal(self, signum: int) -> bool:
		"""Sends the signal to the process group (or the process itself when
		it shares our group). Returns `True` when the signal was sent."""
		if self.child.returncode is not None:
			return False
		try:
			if self.pgid:
				os.killpg(self.pgid, signum)
			else:
				os.kill(self.pid, signum)
		except ProcessLookupError:
			return False
		except PermissionError as e:
			log.warning("%s: could not be signaled: %s", self.name, e)
			return False
		return True

	def __repr__(self) -> str:
		return f"<Process {self.name} pid={self.pid} transport={self.transport}>"


def launch(
	descriptor: CommandDescriptor,
	*,
	is_tty: bool,
	colors: ColorAssigner | None = None,
	session: bool = True,
) -> Process:
	"""Starts the command described by `descriptor`.

	When `descriptor.tty` resolves to a pseudo-terminal, stdout and stderr
	are the slave side and we keep the master side. Otherwise stdout and
	stderr are merged in a single pipe, so that their relative order is
	preserved. The child never reads from us: its stdin is `/dev/null`.

	With `session`, the child is started in a new session, and is hence the
	leader of its own process group."""
	name = descriptor.name
	if not descriptor.argv:
		raise EmptyCommand(name)
	wrap_tty = descriptor.tty.wraps(is_tty)
	# NOTE: Both `openpty` and `pipe` return non-inheritable descriptors,
	# and `close_fds` is the default, so siblings never hold our write end.
	try:
		read_end, write_end = os.openpty() if wrap_tty else os.pipe()
	except OSError as e:
		# Out of descriptors or pseudo-terminals
		raise SpawnFailed(name, e) from e
	try:
		child = subprocess.Popen(  # nosec: B603
			descriptor.argv,
			cwd=descriptor.workdir,
			env=descriptor.environ(),
			stdin=subprocess.DEVNULL,
			stdout=write_end,
			stderr=write_end,
			bufsize=0,
			start_new_session=session,
		)
	except (OSError, ValueError) as e:
		os.close(read_end)
		raise SpawnFailed(name, e) from e
	finally:
		# The child has its own copy, ours would prevent the reader from
		# ever seeing the end of the stream.
		os.close(write_end)
	color = colors.assign(name) if colors and is_tty else None
	process = Process(
		ProcessInfo(name, color),
		child,
		read_end,
		"pty" if wrap_tty else "pipe",
		pgid=child.pid if session else None,
	)
	log.debug("Started %r: %s", process, " ".join(descriptor.argv))
	return process


# --
# ## Lifecycle


class ExitReport(NamedTuple):
	name: str
	returncode: int | None
	error: OSError | None = None

	@property
	def success(self) -> bool:
		return self.returncode == 0

	@property
	def status(self) -> str:
		if self.error is not None or self.returncode is None:
			return f"wait failed: {self.error}"
		if self.returncode < 0:
			return f"signal: {-self.returncode} ({signame(-self.returncode)})"
		return f"exit status: {self.returncode}"

	def describe(self) -> str:
		if self.error is not None:
			return f"{self.name} failed to be waited on: {self.error}"
		return f"{self.name} finished: {self.status}"


def signame(signum: int) -> str:
	try:
		return signal.Signals(signum).name
	except ValueError:
		return f"SIG{signum}"


def await_exit(process: Process) -> ExitReport:
	"""Blocks until the process exits. Wait failures are reported, not
	raised."""
	try:
		returncode = process.wait()
	except OSError as e:
		return ExitReport(process.name, None, e)
	return ExitReport(process.name, returncode)


# --
# ## Signal relay
#
# Python only runs signal handlers in the main thread, between two
# bytecodes. Instead, we register a wakeup file descriptor: the
# interpreter writes the number of each received signal to it, and a
# dedicated thread blocks on reading it and relays the signals.


class RelayPolicy(Enum):
	# Each child has its own process group, signals are forwarded to it.
	GROUP = "group"
	# Children share our process group, the terminal signals them directly.
	PASSIVE = "passive"


class SignalRelay:
	SIGNALS = (signal.SIGINT, signal.SIGTERM)

	def __init__(
		self,
		policy: RelayPolicy = RelayPolicy.GROUP,
		signals: tuple[int, ...] = SIGNALS,
	) -> None:
		self.policy = policy
		self.signals = signals
		self.received: list[int] = []
		self.processes: dict[int, Process] = {}
		self.lock = threading.Lock()
		self.thread: Thread | None = None
		self.handlers: dict[int, object] = {}
		self.pipe: tuple[int, int] | None = None
		self.previousWakeup: int | None = None

	@property
	def isolates(self) -> bool:
		"""Tells if children must be started in their own process group."""
		return self.policy is RelayPolicy.GROUP

	@property
	def isRunning(self) -> bool:
		return bool(self.thread and self.thread.is_alive())

	def track(self, process: Process) -> None:
		with self.lock:
			self.processes[process.pid] = process

	def forget(self, process: Process) -> None:
		with self.lock:
			self.processes.pop(process.pid, None)

	def start(self) -> SignalRelay:
		if self.thread:
			raise RuntimeError("signal relay is already started")
		if threading.current_thread() is not threading.main_thread():
			raise SupervisorError(
				"signal relay can only be installed from the main thread"
			)
		rfd, wfd = os.pipe()
		try:
			os.set_blocking(wfd, False)
			for sig in self.signals:
				self.handlers[sig] = signal.signal(sig, self.onSignal)
			self.previousWakeup = signal.set_wakeup_fd(wfd, warn_on_full_buffer=False)
		except (OSError, ValueError) as e:
			self.restore()
			os.close(rfd)
			os.close(wfd)
			raise SupervisorError(f"could not install signal relay: {e}") from e
		self.pipe = (rfd, wfd)
		self.thread = Thread(target=self.run, name="shunt:signals", daemon=True)
		self.thread.start()
		return self

	def stop(self) -> None:
		if not self.pipe:
			return
		rfd, wfd = self.pipe
		self.restore()
		# Closing the write end is what makes the relay thread stop
		os.close(wfd)
		if self.thread:
			self.thread.join()
		os.close(rfd)
		self.pipe = None
		self.thread = None

	def restore(self) -> None:
		if self.previousWakeup is not None:
			signal.set_wakeup_fd(self.previousWakeup)
			self.previousWakeup = None
		for sig, handler in self.handlers.items():
			# None stands for a handler that was not installed from Python
			if handler is not None:
				signal.signal(sig, handler)
		self.handlers = {}

	def run(self) -> None:
		rfd = self.pipe[0] if self.pipe else -1
		while True:
			try:
				data = os.read(rfd, 64)
			except OSError:
				break
			if not data:
				break
			for signum in data:
				if signum in self.signals:
					self.relay(signum)

	def onSignal(self, signum: int, frame: object) -> None:
		# Delivery is done by the relay thread, see `run`. Having a handler
		# is what keeps the default action from killing us.
		pass

	def relay(self, signum: int) -> int:
		"""Relays the signal to the live processes, returning how many were
		signaled."""
		self.received.append(signum)
		name = signame(signum)
		if self.policy is RelayPolicy.PASSIVE:
			log.info("Received %s, children share our process group", name)
			return 0
		with self.lock:
			processes = list(self.processes.values())
		log.info("Received %s, forwarding to %d process(es)", name, len(processes))
		count = 0
		for process in processes:
			if process.signal(signum):
				log.debug("Sent %s to %r", name, process)
				count += 1
		return count


# --
# ## Supervisor


class Supervisor:
	"""Launches every command, then blocks until all of them have exited
	and their output has been fully drained."""

	def __init__(
		self,
		console: Console | None = None,
		colors: ColorAssigner | None = None,
		policy: RelayPolicy = RelayPolicy.GROUP,
		is_tty: bool | None = None,
		drain_timeout: float = 0.25,
	) -> None:
		self.is_tty: bool = stdout_is_tty() if is_tty is None else is_tty
		self.console: Console = console or Console()
		self.colors: ColorAssigner = colors or ColorAssigner()
		self.relay: SignalRelay = SignalRelay(policy)
		self.drain_timeout = drain_timeout
		self.processes: dict[str, Process] = {}
		self.failures: dict[str, LaunchError] = {}
		self.reports: list[ExitReport] = []
		self.threads: list[Thread] = []
		self.lock = threading.Lock()

	def start(self, descriptor: CommandDescriptor) -> Process | None:
		"""Launches the command and its output and wait threads. Launch
		errors are logged and the command is skipped."""
		try:
			process = launch(
				descriptor,
				is_tty=self.is_tty,
				colors=self.colors,
				session=self.relay.isolates,
			)
		except LaunchError as e:
			log.error("%s", e)
			self.failures[descriptor.name] = e
			return None
		self.processes[process.name] = process
		self.relay.track(process)
		for target, duty in ((self.pump, "output"), (self.track, "wait")):
			thread = Thread(target=target, args=(process,), name=f"{process.name}:{duty}")
			thread.start()
			self.threads.append(thread)
		return process

	def pump(self, process: Process) -> None:
		try:
			multiplex(
				process.info,
				process.output,
				self.console,
				crlf=process.transport == "pty",
			)
		finally:
			process.drained.set()

	def track(self, process: Process) -> None:
		report = await_exit(process)
		self.relay.forget(process)
		if report.error is not None:
			log.error("%s failed to be waited on: %s", report.name, report.error)
		# We give the output thread a chance to drain what's left, but a
		# grandchild holding the output open must not delay the report.
		process.drained.wait(self.drain_timeout)
		with self.lock:
			self.reports.append(report)
		try:
			self.console.message(report.describe())
		except ConsoleClosed as e:
			log.warning("%s", report.describe())
			log.debug("Console closed: %s", e)

	def join(self) -> None:
		# NOTE: Joining has no timeout, a process that never exits keeps
		# us running.
		for thread in self.threads:
			thread.join()

	def run(self, descriptors: Mapping[str, CommandDescriptor]) -> list[ExitReport]:
		"""Runs all the given commands, keyed by name, to completion. Raises
		`SupervisorError` only when the signal relay can't be installed,
		individual failures are reported instead."""
		self.relay.start()
		try:
			for name, descriptor in descriptors.items():
				if descriptor.name != name:
					descriptor = descriptor._replace(name=name)
				self.start(descriptor)
			self.join()
		finally:
			self.relay.stop()
		return self.reports


# --
# ## API


def supervise(
	descriptors: Mapping[str, CommandDescriptor],
	policy: RelayPolicy = RelayPolicy.GROUP,
) -> list[ExitReport]:
	return Supervisor(policy=policy).run(descriptors)


def cli(argv: list[str] | None = None) -> int:
	"""The command-line interface of this module."""
	import shuntconf

	oparser = argparse.ArgumentParser(
		prog="shunt",
		description="Runs the commands of a configuration file side by side",
	)
	oparser.add_argument(
		"config",
		metavar="CONFIG",
		type=Path,
		help="The configuration file (.json or .toml) listing the commands",
	)
	oparser.add_argument(
		"-x",
		"--exclude",
		metavar="NAME",
		action="append",
		default=[],
		help="Does not run the command with the given name (repeatable)",
	)
	oparser.add_argument(
		"--policy",
		choices=[_.value for _ in RelayPolicy],
		default=RelayPolicy.GROUP.value,
		help="How signals reach the children: forwarded to their own process group, or left to the terminal",
	)
	oparser.add_argument(
		"-p",
		"--parse",
		action="store_true",
		default=False,
		help="Outputs the parsed commands and exits",
	)
	oparser.add_argument(
		"-v",
		"--verbose",
		action="store_true",
		default=False,
		help="Logs debugging information",
	)
	args = oparser.parse_args(sys.argv[1:] if argv is None else argv)

	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(name)s %(levelname)s: %(message)s",
	)

	try:
		descriptors = shuntconf.load(args.config, exclude=args.exclude)
	except shuntconf.ConfigError as e:
		print(f"shunt: {e}", file=sys.stderr)
		return 1

	if args.parse:
		for descriptor in descriptors.values():
			sys.stdout.write(f"Parsed: {descriptor.name}\n")
			sys.stdout.write(f"- argv: {list(descriptor.argv)}\n")
			sys.stdout.write(f"- workdir: {descriptor.workdir}\n")
			sys.stdout.write(f"- tty: {descriptor.tty.value}\n")
			sys.stdout.write(f"- env: {dict(descriptor.env)}\n")
		return 0

	try:
		supervise(descriptors, policy=RelayPolicy(args.policy))
	except SupervisorError as e:
		print(f"shunt: {e}", file=sys.stderr)
		return 1
	return 0


if __name__ == "__main__":
	sys.exit(cli())
# EOF
