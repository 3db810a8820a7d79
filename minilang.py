"""minilang entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import Callable, List, Optional

from interpreter import DEFAULT_MAX_DEPTH, Interpreter, TracebackFormatter, parse_source
from lexer import Lexer, MiniError, MiniSyntaxError
from parser import TreePrinter


def _report(error: MiniError, interpreter: Optional[Interpreter], args: argparse.Namespace) -> None:
    if interpreter is not None and (args.traceback or args.traceback_json):
        formatter = TracebackFormatter(interpreter)
        if args.traceback:
            print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
    print(str(error), file=sys.stderr)


def _is_incomplete(error: MiniSyntaxError) -> bool:
    return error.message.startswith("Unexpected end of input")


def run_repl(args: argparse.Namespace, input_provider: Callable[[str], str] = input) -> int:
    print("minilang REPL. Enter statements, blank line to run buffer.")
    pending_newline = False

    def _output_sink(text: str) -> None:
        nonlocal pending_newline
        pending_newline = not text.endswith("\n")
        sys.stdout.write(text)

    interpreter = Interpreter(
        filename="<repl>",
        verbose=args.verbose,
        output_sink=_output_sink,
        max_depth=args.max_depth,
    )
    buffer: List[str] = []

    while True:
        prompt = ">>> " if not buffer else "..> "
        try:
            line = input_provider(prompt)
        except EOFError:
            print()
            break

        if not buffer and line.strip() == "":
            continue
        if buffer and line.strip() != "":
            buffer.append(line)
            continue

        # a blank line submits a pending buffer; otherwise try the line on its own
        source_text = "\n".join(buffer) if buffer else line
        try:
            unit = parse_source(source_text, "<repl>", max_depth=args.max_depth)
        except MiniSyntaxError as error:
            if not buffer and _is_incomplete(error):
                buffer.append(line)
            else:
                buffer.clear()
                _report(error, None, args)
            continue
        buffer.clear()

        interpreter.set_source(source_text)
        try:
            interpreter.analyze(unit)
            value = interpreter.execute(unit)
        except MiniError as error:
            _report(error, interpreter, args)
            interpreter.reset_call_stack()
            continue
        finally:
            if pending_newline:
                # keep the prompt on a fresh line after print()
                print()
                pending_newline = False
        print(f"Result: {value.as_str()}")

    return 0


def _lex(source_text: str, filename: str) -> int:
    for token in Lexer.from_text(source_text, filename):
        print(f"{token.kind} '{token.lexeme}' {token.location.line}:{token.location.column}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="minilang reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("-l", "--lex", dest="mode", action="store_const", const="lex", help="Print the token stream")
    mode.add_argument("-p", "--parse", dest="mode", action="store_const", const="parse", help="Print the AST")
    mode.add_argument("-a", "--analyze", dest="mode", action="store_const", const="analyze", help="Check name resolution only")
    parser.set_defaults(mode="execute")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback", action="store_true", help="Print the interpreter call stack on errors")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Maximum nesting of function calls")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(args)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    interpreter: Optional[Interpreter] = None
    try:
        if args.mode == "lex":
            return _lex(source_text, filename)
        unit = parse_source(source_text, filename, max_depth=args.max_depth)
        if args.mode == "parse":
            print(TreePrinter().format(unit))
            return 0
        interpreter = Interpreter(
            unit,
            filename=filename,
            source=source_text,
            verbose=args.verbose,
            max_depth=args.max_depth,
        )
        interpreter.analyze()
        if args.mode == "analyze":
            return 0
        value = interpreter.execute()
    except MiniError as error:
        _report(error, interpreter, args)
        return 1
    print(f"Result: {value.as_str()}")
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
