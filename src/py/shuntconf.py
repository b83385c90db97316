from __future__ import annotations
from collections.abc import Iterable, Mapping
from pathlib import Path
import tomllib

import json5

from shunt import CommandDescriptor, DescriptorError, ShuntError

# --
# # Shunt configuration
#
# Loads the commands to supervise out of a `.json`, `.json5` or `.toml`
# configuration file (JSON files are read as JSON5). The file
# holds a `commands` table mapping each command name to either its argument
# list, or a table with `argv` and the optional `tty`, `workdir` and `env`
# keys:
#
# ```json
# {"commands": {
#   "build": ["make", "watch"],
#   "serve": {"argv": ["python", "-m", "http.server"], "workdir": "public",
#             "tty": "never", "env": {"PORT": "8000", "DEBUG": null}}
# }}
# ```
#
# Relative working directories are resolved against the directory of the
# configuration file. TOML has no `null`, so `false` also removes an
# environment variable.


class ConfigError(ShuntError, ValueError):
	pass


KEYS = ("argv", "tty", "workdir", "env")


def parseEnv(name: str, env: object) -> dict[str, str | None]:
	if env is None:
		return {}
	if not isinstance(env, Mapping):
		raise ConfigError(f'command "{name}": env must be a table')
	res: dict[str, str | None] = {}
	for key, value in env.items():
		if value is None or value is False:
			res[key] = None
		elif isinstance(value, (str, int, float)) and not isinstance(value, bool):
			res[key] = str(value)
		else:
			raise ConfigError(
				f'command "{name}": env value of {key} must be a string or null'
			)
	return res


def parseCommand(name: str, value: object, base: Path) -> CommandDescriptor:
	"""Parses the configuration of one command, resolving its working
	directory against `base`."""
	if isinstance(value, list):
		argv, tty, workdir, env = value, None, None, None
	elif isinstance(value, Mapping):
		if unknown := sorted(set(value) - set(KEYS)):
			raise ConfigError(f'command "{name}": unknown keys {", ".join(unknown)}')
		if "argv" not in value:
			raise ConfigError(f'command "{name}": missing argv')
		argv = value["argv"]
		tty = value.get("tty")
		workdir = value.get("workdir")
		env = value.get("env")
	else:
		raise ConfigError(
			f'command "{name}": expected an argument list or a table, got {type(value).__name__}'
		)
	if not isinstance(argv, list):
		raise ConfigError(f'command "{name}": argv must be a list of strings')
	if workdir is not None and not isinstance(workdir, str):
		raise ConfigError(f'command "{name}": workdir must be a string')
	try:
		return CommandDescriptor.create(
			name,
			argv,
			workdir=base / workdir if workdir else base,
			tty=tty,
			env=parseEnv(name, env),
		)
	except DescriptorError as e:
		raise ConfigError(str(e)) from e


def parse(
	document: object, base: Path, exclude: Iterable[str] = ()
) -> dict[str, CommandDescriptor]:
	"""Turns a decoded configuration document into command descriptors,
	keyed by name, leaving out the `exclude`d ones."""
	if not isinstance(document, Mapping):
		raise ConfigError("configuration must be a table")
	commands = document.get("commands")
	if not isinstance(commands, Mapping):
		raise ConfigError('configuration must have a "commands" table')
	excluded = set(exclude)
	if unknown := sorted(excluded - set(commands)):
		raise ConfigError(f"cannot exclude unknown commands: {', '.join(unknown)}")
	return dict(
		(name, parseCommand(name, value, base))
		for name, value in commands.items()
		if name not in excluded
	)


def read(path: Path) -> object:
	"""Decodes the configuration file, picking the format out of its
	extension."""
	ext = path.suffix.lower()
	if not ext:
		raise ConfigError(f"could not recognise extension for config file: {path}")
	if ext not in (".json", ".json5", ".toml"):
		raise ConfigError(f"unknown file extension for config file: {ext[1:]}")
	try:
		if ext == ".toml":
			with open(path, "rb") as f:
				return tomllib.load(f)
		# JSON5 is a superset of JSON: comments, unquoted keys and
		# trailing commas are accepted in both.
		with open(path, "r", encoding="utf-8") as f:
			return json5.load(f)
	except OSError as e:
		raise ConfigError(f"could not open config: {path}: {e.strerror}") from e
	except tomllib.TOMLDecodeError as e:
		raise ConfigError(f"could not parse TOML config file {path}: {e}") from e
	except ValueError as e:
		# Includes UnicodeDecodeError
		raise ConfigError(f"could not parse JSON config file {path}: {e}") from e


def load(
	path: Path | str, exclude: Iterable[str] = ()
) -> dict[str, CommandDescriptor]:
	path = Path(path)
	try:
		path = path.resolve(strict=True)
	except OSError as e:
		raise ConfigError(f"could not open config: {path}: {e.strerror}") from e
	return parse(read(path), path.parent, exclude)


# EOF
