#!/usr/bin/env python3
"""Test cases for command-line parsing in run-all."""

import sys
import os
import unittest

# Add src directory to path so we can import runall
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src", "py"))

from runall import parse, parse_command, Command, ParseError


class TestParseCommand(unittest.TestCase):
	"""Test splitting a single command string."""

	def test_program_only(self):
		self.assertEqual(parse_command("ls"), Command("ls", "ls", ()))

	def test_program_with_args(self):
		self.assertEqual(
			parse_command("npm run dev"), Command("npm", "npm", ("run", "dev"))
		)

	def test_alias(self):
		self.assertEqual(
			parse_command("npm run dev", "server"),
			Command("server", "npm", ("run", "dev")),
		)

	def test_any_whitespace(self):
		self.assertEqual(
			parse_command("  make\t-j4 \n all "), Command("make", "make", ("-j4", "all"))
		)

	def test_no_quoting(self):
		self.assertEqual(
			parse_command("echo 'hello world'"),
			Command("echo", "echo", ("'hello", "world'")),
		)

	def test_empty(self):
		with self.assertRaises(ParseError) as context:
			parse_command("")
		self.assertEqual(str(context.exception), "Could not parse command string: ")

	def test_blank(self):
		with self.assertRaises(ParseError):
			parse_command("   ")

	def test_argv(self):
		self.assertEqual(parse_command("ls -la /tmp").argv, ["ls", "-la", "/tmp"])


class TestParse(unittest.TestCase):
	"""Test parsing the full argument list."""

	def test_default_aliases(self):
		self.assertEqual(
			parse(["echo hi", "ls -la"]),
			[
				Command("echo", "echo", ("hi",)),
				Command("ls", "ls", ("-la",)),
			],
		)

	def test_alias_override(self):
		self.assertEqual(
			parse(["-a", "server", "npm run dev"]),
			[Command("server", "npm", ("run", "dev"))],
		)

	def test_long_alias_flag(self):
		self.assertEqual(
			parse(["--alias", "s", "serve", "watch"]),
			[Command("s", "serve", ()), Command("watch", "watch", ())],
		)

	def test_alias_applies_to_next_command_only(self):
		result = parse(["echo a", "-a", "B", "echo b", "echo c"])
		self.assertEqual([_.alias for _ in result], ["echo", "B", "echo"])

	def test_duplicate_aliases_allowed(self):
		result = parse(["-a", "x", "true", "-a", "x", "false"])
		self.assertEqual([_.alias for _ in result], ["x", "x"])

	def test_empty(self):
		self.assertEqual(parse([]), [])

	def test_trailing_alias_flag(self):
		with self.assertRaises(ParseError) as context:
			parse(["echo a", "-a"])
		self.assertEqual(str(context.exception), "Alias expected")

	def test_alias_flag_twice(self):
		with self.assertRaises(ParseError) as context:
			parse(["-a", "--alias"])
		self.assertEqual(str(context.exception), "Alias expected")

	def test_two_aliases(self):
		with self.assertRaises(ParseError) as context:
			parse(["-a", "alias1", "-a", "alias2"])
		self.assertEqual(str(context.exception), "Command expected")

	def test_trailing_alias(self):
		with self.assertRaises(ParseError) as context:
			parse(["-a", "alias1"])
		self.assertEqual(str(context.exception), "Command expected")

	def test_unexpected_argument(self):
		with self.assertRaises(ParseError) as context:
			parse(["-v", "echo a"])
		self.assertEqual(str(context.exception), "Unexpected argument: -v")

	def test_unexpected_argument_after_alias_flag(self):
		# Flags are checked before the alias is captured
		with self.assertRaises(ParseError) as context:
			parse(["-a", "-x"])
		self.assertEqual(str(context.exception), "Unexpected argument: -x")

	def test_dash_command(self):
		with self.assertRaises(ParseError):
			parse(["-la"])

	def test_empty_command_string(self):
		with self.assertRaises(ParseError) as context:
			parse(["echo a", ""])
		self.assertTrue(str(context.exception).startswith("Could not parse command string"))

	def test_empty_command_string_with_alias(self):
		with self.assertRaises(ParseError):
			parse(["-a", "x", " "])


def test_round_trip():
	"""The alias of an unaliased command is its first token"""
	strings = ["python -m http.server", "sleep 1", "/usr/bin/env", "tail -f a.log b.log"]
	for command, text in zip(parse(strings), strings):
		tokens = text.split()
		assert command.alias == tokens[0]
		assert command.program == tokens[0]
		assert list(command.args) == tokens[1:]


if __name__ == "__main__":
	unittest.main()
# EOF
