#!/usr/bin/env python3
"""Test cases for loading configuration files and the command-line
interface."""

import sys
import os
import io
import json
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

# Add src directory to path so we can import shunt
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src", "py"))

from shunt import TTYMode, cli
from shuntconf import ConfigError, load, parse


class TestParse(unittest.TestCase):
	base = Path("/srv/project")

	def test_argument_list(self):
		commands = parse({"commands": {"build": ["make", "watch"]}}, self.base)
		build = commands["build"]
		self.assertEqual(build.name, "build")
		self.assertEqual(build.argv, ("make", "watch"))
		self.assertEqual(build.workdir, self.base)
		self.assertIs(build.tty, TTYMode.AUTO)
		self.assertEqual(dict(build.env), {})

	def test_full_table(self):
		commands = parse(
			{
				"commands": {
					"serve": {
						"argv": ["python", "-m", "http.server"],
						"tty": "never",
						"workdir": "public",
						"env": {"PORT": "8000", "DEBUG": None},
					}
				}
			},
			self.base,
		)
		serve = commands["serve"]
		self.assertEqual(serve.workdir, self.base / "public")
		self.assertIs(serve.tty, TTYMode.NEVER)
		self.assertEqual(dict(serve.env), {"PORT": "8000", "DEBUG": None})

	def test_absolute_workdir(self):
		commands = parse(
			{"commands": {"a": {"argv": ["true"], "workdir": "/tmp"}}}, self.base
		)
		self.assertEqual(commands["a"].workdir, Path("/tmp"))

	def test_false_removes_and_numbers_are_strings(self):
		commands = parse(
			{"commands": {"a": {"argv": ["true"], "env": {"A": False, "PORT": 80}}}},
			self.base,
		)
		self.assertEqual(dict(commands["a"].env), {"A": None, "PORT": "80"})

	def test_empty_argv_is_left_to_the_launcher(self):
		commands = parse({"commands": {"bad": [], "good": ["true"]}}, self.base)
		self.assertEqual(commands["bad"].argv, ())

	def test_exclude(self):
		commands = parse(
			{"commands": {"a": ["true"], "b": ["true"], "c": ["true"]}},
			self.base,
			exclude=["b"],
		)
		self.assertEqual(list(commands), ["a", "c"])

	def test_exclude_unknown(self):
		with self.assertRaises(ConfigError):
			parse({"commands": {"a": ["true"]}}, self.base, exclude=["z"])

	def test_malformed(self):
		for document in (
			[],
			{},
			{"commands": []},
			{"commands": {"a": "echo hello"}},
			{"commands": {"a": {"tty": "always"}}},
			{"commands": {"a": {"argv": "echo"}}},
			{"commands": {"a": {"argv": ["true"], "restart": True}}},
			{"commands": {"a": {"argv": ["true"], "tty": "maybe"}}},
			{"commands": {"a": {"argv": ["true"], "workdir": 1}}},
			{"commands": {"a": {"argv": ["true"], "env": ["A"]}}},
			{"commands": {"a": {"argv": ["true"], "env": {"A": ["x"]}}}},
			{"commands": {"a": ["sleep", 1]}},
		):
			with self.subTest(document=document):
				with self.assertRaises(ConfigError):
					parse(document, self.base)


class TestLoad(unittest.TestCase):
	def setUp(self):
		self.tmp = tempfile.TemporaryDirectory()
		self.dir = Path(self.tmp.name).resolve()

	def tearDown(self):
		self.tmp.cleanup()

	def write(self, name: str, content: str) -> Path:
		path = self.dir / name
		path.write_text(content)
		return path

	def test_json(self):
		path = self.write(
			"shunt.json",
			json.dumps({"commands": {"web": {"argv": ["npm", "start"], "workdir": "web"}}}),
		)
		commands = load(path)
		self.assertEqual(commands["web"].workdir, self.dir / "web")

	def test_toml(self):
		path = self.write(
			"shunt.toml",
			'[commands]\nbuild = ["make"]\n\n'
			'[commands.serve]\nargv = ["serve"]\ntty = "always"\n'
			'env = { PORT = "8000", DEBUG = false }\n',
		)
		commands = load(path)
		self.assertEqual(list(commands), ["build", "serve"])
		self.assertEqual(commands["build"].workdir, self.dir)
		self.assertIs(commands["serve"].tty, TTYMode.ALWAYS)
		self.assertEqual(dict(commands["serve"].env), {"PORT": "8000", "DEBUG": None})

	def test_json5(self):
		path = self.write(
			"shunt.json5",
			"{\n"
			"  commands: {\n"
			"    a: ['true'],\n"
			"    /* a comment */\n"
			"    b: {argv: ['echo', 'hi'], tty: 'never', env: {DEBUG: null,},},\n"
			"  }, // trailing\n"
			"}\n",
		)
		commands = load(path)
		self.assertEqual(list(commands), ["a", "b"])
		self.assertEqual(commands["a"].argv, ("true",))
		self.assertEqual(commands["b"].argv, ("echo", "hi"))
		self.assertIs(commands["b"].tty, TTYMode.NEVER)
		self.assertEqual(dict(commands["b"].env), {"DEBUG": None})

	def test_json_with_comments(self):
		path = self.write("shunt.json", '{"commands": {"a": ["true"]}} // done\n')
		self.assertEqual(list(load(path)), ["a"])

	def test_unknown_extension(self):
		with self.assertRaises(ConfigError) as ctx:
			load(self.write("shunt.yaml", "commands: {}"))
		self.assertIn("yaml", str(ctx.exception))
		with self.assertRaises(ConfigError):
			load(self.write("shunt", "{}"))

	def test_missing_file(self):
		with self.assertRaises(ConfigError):
			load(self.dir / "missing.json")

	def test_invalid_syntax(self):
		with self.assertRaises(ConfigError):
			load(self.write("shunt.json", "{commands: "))
		with self.assertRaises(ConfigError):
			load(self.write("shunt.toml", "[commands"))


class TestCLI(unittest.TestCase):
	def setUp(self):
		self.tmp = tempfile.TemporaryDirectory()
		self.path = Path(self.tmp.name) / "shunt.json"
		self.path.write_text(
			json.dumps({"commands": {"a": ["echo", "hi"], "b": {"argv": ["true"], "tty": "never"}}})
		)

	def tearDown(self):
		self.tmp.cleanup()

	def test_parse(self):
		out = io.StringIO()
		with redirect_stdout(out):
			self.assertEqual(cli([str(self.path), "--parse", "-x", "a"]), 0)
		text = out.getvalue()
		self.assertIn("Parsed: b\n", text)
		self.assertIn("- argv: ['true']\n", text)
		self.assertIn("- tty: never\n", text)
		self.assertNotIn("Parsed: a", text)

	def test_config_error(self):
		err = io.StringIO()
		with redirect_stderr(err):
			self.assertEqual(cli([str(self.path) + ".missing"]), 1)
		self.assertIn("could not open config", err.getvalue())


if __name__ == "__main__":
	unittest.main()
