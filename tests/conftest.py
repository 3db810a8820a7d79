"""
Pytest configuration and fixtures for minilang tests.
"""

import pytest

from interpreter import Interpreter, parse_source
from lexer import Lexer


@pytest.fixture
def run():
    """
    Analyze and execute a program, capturing intrinsic output.

    Returns a callable producing (value, output_text).
    """
    def _run(source, **options):
        output = []
        interpreter = Interpreter(
            parse_source(source, "test.ml"),
            filename="test.ml",
            source=source,
            output_sink=output.append,
            **options,
        )
        interpreter.analyze()
        value = interpreter.execute()
        return value, "".join(output)

    return _run


@pytest.fixture
def make_interpreter():
    """Build an interpreter over a parsed program without running it."""
    def _make(source, **options):
        options.setdefault("output_sink", lambda text: None)
        return Interpreter(parse_source(source, "test.ml"), filename="test.ml", source=source, **options)

    return _make


@pytest.fixture
def kinds():
    """Token kinds for a piece of source text."""
    def _kinds(text):
        return [token.kind for token in Lexer.from_text(text)]

    return _kinds
