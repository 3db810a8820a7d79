from __future__ import annotations
import json
import sys
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

import numpy as np

from lexer import Lexer, Location, MiniError, MiniSyntaxError
from parser import Node, Parser


TYPE_INT = "INT"
TYPE_FUNCTION = "FUNCTION"
TYPE_INTRINSIC = "INTRINSIC"

DEFAULT_MAX_DEPTH = 10_000
DEFAULT_MAX_LOG_ENTRIES = 100_000

# Python frames consumed per interpreted call, generously rounded up
_FRAMES_PER_CALL = 30

_UINT64_MASK = 0xFFFF_FFFF_FFFF_FFFF


def wrap_int(value: int) -> int:
    """Reduce an exact integer to its 64-bit two's-complement value."""
    return int(np.array(value & _UINT64_MASK, dtype=np.uint64).astype(np.int64))


@contextmanager
def recursion_headroom(max_depth: int) -> Iterator[None]:
    """Size Python's recursion limit for max_depth nested calls, restoring it afterwards."""
    previous = sys.getrecursionlimit()
    sys.setrecursionlimit(max_depth * _FRAMES_PER_CALL + 1000)
    try:
        yield
    finally:
        sys.setrecursionlimit(previous)


class MiniSemanticError(MiniError):
    """Raised when a name does not resolve."""


class MiniEvaluationError(MiniError):
    """Raised for runtime faults in a well-formed program."""


class MiniRuntimeError(MiniError):
    """Raised when an interpreter invariant is violated."""


@dataclass(eq=False)
class Value:
    type: str
    value: Any

    def as_str(self) -> str:
        if self.type == TYPE_INT:
            return str(self.value)
        if self.type == TYPE_FUNCTION:
            return f"<function {self.value.name}>"
        if self.type == TYPE_INTRINSIC:
            return "<intrinsic function>"
        raise MiniRuntimeError(f"Unknown value type '{self.type}'")

    def __str__(self) -> str:
        return self.as_str()


def int_value(number: int) -> Value:
    return Value(TYPE_INT, wrap_int(number))


@dataclass(eq=False)
class Environment:
    parent: Optional["Environment"] = None
    values: Dict[str, Value] = field(default_factory=dict)

    def _find_env(self, name: str) -> Optional["Environment"]:
        env: Optional[Environment] = self
        while env is not None:
            if name in env.values:
                return env
            env = env.parent
        return None

    def child(self) -> "Environment":
        return Environment(parent=self)

    def define(self, name: str, value: Value, *, location: Optional[Location] = None) -> None:
        if name in self.values:
            raise MiniEvaluationError(
                f"Variable '{name}' already defined in this scope.", location=location, rule="VARDEF"
            )
        self.values[name] = value

    def get(self, name: str, *, location: Optional[Location] = None) -> Value:
        env = self._find_env(name)
        if env is None:
            raise MiniSemanticError(f"Undefined variable '{name}'.", location=location, rule="VARREF")
        return env.values[name]

    def assign(self, name: str, value: Value, *, location: Optional[Location] = None) -> None:
        env = self._find_env(name)
        if env is None:
            raise MiniSemanticError(
                f"Assignment to undefined variable '{name}'.", location=location, rule="ASSIGN"
            )
        env.values[name] = value

    def has(self, name: str) -> bool:
        return self._find_env(name) is not None

    def snapshot(self) -> Dict[str, str]:
        """Visible bindings, innermost first wins; intrinsics are omitted."""
        chain: List[Environment] = []
        env: Optional[Environment] = self
        while env is not None:
            chain.append(env)
            env = env.parent
        visible: Dict[str, str] = {}
        for scope in reversed(chain):
            for k, v in scope.values.items():
                if v.type != TYPE_INTRINSIC:
                    visible[k] = v.as_str()
        return visible


@dataclass(eq=False)
class Function:
    name: str
    params: List[str]
    body: Node
    closure: Environment


IntrinsicImpl = Callable[["Interpreter", List[Value], Location], Value]


@dataclass(eq=False)
class IntrinsicFunction:
    name: str
    arity: int
    impl: IntrinsicImpl

    def validate(self, supplied: int, location: Location) -> None:
        if supplied != self.arity:
            raise MiniEvaluationError(
                f"{self.name} expects {self.arity} argument(s) but got {supplied}",
                location=location,
                rule="FNCALL",
            )


class Intrinsics:
    def __init__(self) -> None:
        self.table: Dict[str, IntrinsicFunction] = {}
        self._register("print", 1, self._print)
        self._register("println", 1, self._println)

    def _register(self, name: str, arity: int, impl: IntrinsicImpl) -> None:
        self.table[name] = IntrinsicFunction(name=name, arity=arity, impl=impl)

    def install(self, env: Environment) -> None:
        for name, intrinsic in self.table.items():
            env.define(name, Value(TYPE_INTRINSIC, intrinsic))

    def invoke(
        self,
        interpreter: "Interpreter",
        intrinsic: IntrinsicFunction,
        args: List[Value],
        location: Location,
    ) -> Value:
        intrinsic.validate(len(args), location)
        return intrinsic.impl(interpreter, args, location)

    def _print(self, interpreter: "Interpreter", args: List[Value], location: Location) -> Value:
        return self._write(interpreter, "print", args[0].as_str())

    def _println(self, interpreter: "Interpreter", args: List[Value], location: Location) -> Value:
        return self._write(interpreter, "println", args[0].as_str() + "\n")

    def _write(self, interpreter: "Interpreter", event: str, text: str) -> Value:
        interpreter.output_sink(text)
        interpreter.io_log.append({"event": event, "text": text})
        return Value(TYPE_INT, 0)


def _truncating_div(a: int, b: int) -> int:
    if b == 0:
        raise ZeroDivisionError
    quotient = abs(a) // abs(b)
    return quotient if (a < 0) == (b < 0) else -quotient


BINARY_OPERATORS: Dict[str, Callable[[int, int], int]] = {
    "ADD": lambda a, b: a + b,
    "SUB": lambda a, b: a - b,
    "MULTIPLY": lambda a, b: a * b,
    "DIVIDE": _truncating_div,
    "LESS": lambda a, b: int(a < b),
    "LESS_EQUAL": lambda a, b: int(a <= b),
    "GREATER": lambda a, b: int(a > b),
    "GREATER_EQUAL": lambda a, b: int(a >= b),
    "EQUAL": lambda a, b: int(a == b),
    "NOT_EQUAL": lambda a, b: int(a != b),
}


@dataclass
class Frame:
    """One activation on the call stack; the top-level frame has no call site."""

    name: str
    env: Environment
    number: int
    call_location: Optional[Location] = None
    arguments: Dict[str, str] = field(default_factory=dict)

    def signature(self) -> str:
        if self.call_location is None:
            return self.name
        listed = ", ".join(f"{k}={v}" for k, v in self.arguments.items())
        return f"{self.name}({listed})"


@dataclass
class Step:
    index: int
    kind: str
    frame: int
    depth: int
    location: Optional[Location]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]] = None


class StepLog:
    """Bounded history of evaluated statements and calls.

    Only the newest ``max_entries`` steps are retained. Independently of that
    window, the latest step of every frame that is still active is remembered
    so a traceback can point into each pending call; a frame's step is released
    when its call returns.
    """

    def __init__(self, max_entries: Optional[int] = DEFAULT_MAX_LOG_ENTRIES) -> None:
        self.steps: Deque[Step] = deque(maxlen=max_entries)
        self.count = 0
        self._active: Dict[int, Step] = {}

    def record(
        self,
        kind: str,
        frame: Frame,
        depth: int,
        location: Optional[Location],
        statement: Optional[str],
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> Step:
        step = Step(self.count, kind, frame.number, depth, location, statement, env_snapshot)
        self.steps.append(step)
        self._active[frame.number] = step
        self.count += 1
        return step

    def latest(self, frame: Frame) -> Optional[Step]:
        return self._active.get(frame.number)

    def release(self, frame: Frame) -> None:
        self._active.pop(frame.number, None)

    @property
    def tracked_frames(self) -> int:
        return len(self._active)

    @property
    def last_index(self) -> Optional[int]:
        return self.count - 1 if self.count else None

    @property
    def last_location(self) -> Optional[Location]:
        return self.steps[-1].location if self.steps else None


class Analyzer:
    """Checks name resolution over the AST without executing it.

    Mirrors the evaluator's scoping: STATEMENT_LIST opens a scope, a FUNCTION
    binds its name in the enclosing scope and its parameters in a scope that
    encloses the body.
    """

    def __init__(self, env: Environment) -> None:
        self.env = env

    def analyze(self, node: Node) -> None:
        self._analyze(node, self.env)

    def _analyze(self, node: Node, env: Environment) -> None:
        kind = node.kind
        if kind == "VARDEF":
            self._declare(node.kid(0).text, env, node.location)
        elif kind == "VARREF":
            if not env.has(node.text):
                raise MiniSemanticError(
                    f"Variable '{node.text}' referenced before definition.",
                    location=node.location,
                    rule="VARREF",
                )
        elif kind == "STATEMENT_LIST":
            scope = env.child()
            for child in node.children:
                self._analyze(child, scope)
        elif kind == "FUNCTION":
            self._declare(node.kid(0).text, env, node.location)
            param_env = env.child()
            params = node.find("PARAMETER_LIST")
            if params is not None:
                for param in params.children:
                    self._declare(param.text, param_env, param.location)
            self._analyze(node.children[-1], param_env)
        else:
            for child in node.children:
                self._analyze(child, env)

    def _declare(self, name: str, env: Environment, location: Optional[Location]) -> None:
        env.define(name, Value(TYPE_INT, 0), location=location)


class Interpreter:
    def __init__(
        self,
        unit: Optional[Node] = None,
        *,
        filename: str = "<string>",
        source: str = "",
        verbose: bool = False,
        output_sink: Optional[Callable[[str], None]] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_log_entries: Optional[int] = DEFAULT_MAX_LOG_ENTRIES,
    ) -> None:
        self.unit = unit
        self.filename = filename
        self.set_source(source)
        self.verbose = verbose
        self.output_sink = output_sink or self._write_stdout
        self.max_depth = max_depth
        self.intrinsics = Intrinsics()

        self.global_env = Environment()
        self.intrinsics.install(self.global_env)
        self.analysis_env = Environment()
        self.intrinsics.install(self.analysis_env)

        self.step_log = StepLog(max_log_entries)
        self.io_log: Deque[Dict[str, str]] = deque(maxlen=max_log_entries)
        self.frame_counter = 0
        self.global_frame = self._new_frame("<top-level>", self.global_env)
        self.call_stack: List[Frame] = [self.global_frame]

        self._handlers: Dict[str, Callable[[Node, Environment], Value]] = {
            "UNIT": self._eval_unit,
            "STATEMENT": self._eval_statement,
            "STATEMENT_LIST": self._eval_statement_list,
            "VARDEF": self._eval_vardef,
            "VARREF": self._eval_varref,
            "INT_LITERAL": self._eval_int_literal,
            "ASSIGN": self._eval_assign,
            "LOGICAL_AND": self._eval_logical,
            "LOGICAL_OR": self._eval_logical,
            "IF": self._eval_if,
            "WHILE": self._eval_while,
            "FUNCTION": self._eval_function,
            "FNCALL": self._eval_fncall,
        }
        for kind in BINARY_OPERATORS:
            self._handlers[kind] = self._eval_binary

    @staticmethod
    def _write_stdout(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    def analyze(self, unit: Optional[Node] = None) -> None:
        """Validate name resolution; definitions persist only if the whole unit passes."""
        node = self._unit(unit)
        scratch = Environment(values=dict(self.analysis_env.values))
        with recursion_headroom(self.max_depth):
            try:
                Analyzer(scratch).analyze(node)
            except RecursionError:
                raise MiniEvaluationError(
                    "Maximum nesting depth exceeded", location=node.location, rule="nesting"
                ) from None
        self.analysis_env = scratch

    def execute(self, unit: Optional[Node] = None) -> Value:
        node = self._unit(unit)
        try:
            with recursion_headroom(self.max_depth):
                return self._execute(node)
        except MiniError:
            # analysis saw every top-level definition; keep only those that ran
            self.analysis_env = Environment(values=dict(self.global_env.values))
            raise

    def _execute(self, node: Node) -> Value:
        try:
            return self._evaluate(node, self.global_env)
        except MiniError as error:
            if error.step_index is None:
                error.step_index = self.step_log.last_index
            raise
        except RecursionError:
            error = MiniEvaluationError(
                "Maximum recursion depth exceeded", location=self.step_log.last_location, rule="FNCALL"
            )
            error.step_index = self.step_log.last_index
            raise error from None
        except Exception as exc:
            # Surface unexpected Python-level failures as interpreter errors.
            wrapped = MiniRuntimeError(
                f"Internal interpreter error: {exc}", location=self.step_log.last_location, rule="internal"
            )
            wrapped.step_index = self.step_log.last_index
            raise wrapped from exc

    def set_source(self, source: str) -> None:
        self.source = source
        self._source_lines = source.splitlines()

    def reset_call_stack(self) -> None:
        for frame in self.call_stack[1:]:
            self.step_log.release(frame)
        self.call_stack = [self.global_frame]

    def source_line(self, location: Optional[Location]) -> Optional[str]:
        if location is None or location.file != self.filename:
            return None
        index = location.line - 1
        if 0 <= index < len(self._source_lines):
            return self._source_lines[index].strip()
        return None

    def _unit(self, unit: Optional[Node]) -> Node:
        node = unit if unit is not None else self.unit
        if node is None:
            raise MiniRuntimeError("No program to run")
        return node

    def _evaluate(self, node: Node, env: Environment) -> Value:
        handler = self._handlers.get(node.kind)
        if handler is None:
            raise MiniRuntimeError(f"Unknown AST node kind '{node.kind}' during evaluation")
        return handler(node, env)

    def _eval_unit(self, node: Node, env: Environment) -> Value:
        last = Value(TYPE_INT, 0)
        for child in node.children:
            last = self._evaluate(child, env)
        return last

    def _eval_statement(self, node: Node, env: Environment) -> Value:
        self._log_step(rule=node.kid(0).kind, location=node.location, env=env)
        return self._evaluate(node.kid(0), env)

    def _eval_statement_list(self, node: Node, env: Environment) -> Value:
        scope = env.child()
        last = Value(TYPE_INT, 0)
        for child in node.children:
            last = self._evaluate(child, scope)
        return last

    def _eval_vardef(self, node: Node, env: Environment) -> Value:
        env.define(node.kid(0).text, Value(TYPE_INT, 0), location=node.location)
        return Value(TYPE_INT, 0)

    def _eval_varref(self, node: Node, env: Environment) -> Value:
        return env.get(node.text, location=node.location)

    def _eval_int_literal(self, node: Node, env: Environment) -> Value:
        return int_value(int(node.text))

    def _eval_assign(self, node: Node, env: Environment) -> Value:
        target = node.kid(0)
        value = self._evaluate(node.kid(1), env)
        env.assign(target.text, value, location=target.location)
        return value

    def _eval_binary(self, node: Node, env: Environment) -> Value:
        lhs = self._expect_int(self._evaluate(node.kid(0), env), node)
        rhs = self._expect_int(self._evaluate(node.kid(1), env), node)
        try:
            return int_value(BINARY_OPERATORS[node.kind](lhs, rhs))
        except ZeroDivisionError:
            raise MiniEvaluationError("Division by zero.", location=node.location, rule=node.kind) from None

    def _eval_logical(self, node: Node, env: Environment) -> Value:
        lhs = self._expect_int(self._evaluate(node.kid(0), env), node)
        if node.kind == "LOGICAL_AND" and lhs == 0:
            return Value(TYPE_INT, 0)
        if node.kind == "LOGICAL_OR" and lhs != 0:
            return Value(TYPE_INT, 1)
        rhs = self._expect_int(self._evaluate(node.kid(1), env), node)
        return Value(TYPE_INT, int(rhs != 0))

    def _eval_if(self, node: Node, env: Environment) -> Value:
        if self._condition(node, env) != 0:
            self._evaluate(node.kid(1), env)
        elif node.num_kids == 3:
            self._evaluate(node.kid(2), env)
        return Value(TYPE_INT, 0)

    def _eval_while(self, node: Node, env: Environment) -> Value:
        while self._condition(node, env) != 0:
            self._evaluate(node.kid(1), env)
        return Value(TYPE_INT, 0)

    def _condition(self, node: Node, env: Environment) -> int:
        return self._expect_int(self._evaluate(node.kid(0), env), node)

    def _eval_function(self, node: Node, env: Environment) -> Value:
        params = node.find("PARAMETER_LIST")
        function = Function(
            name=node.kid(0).text,
            params=[param.text for param in params.children] if params is not None else [],
            body=node.children[-1],
            closure=env,
        )
        self._log_step(rule="FUNCTION", location=node.location, env=env)
        env.define(function.name, Value(TYPE_FUNCTION, function), location=node.location)
        return Value(TYPE_INT, 0)

    def _eval_fncall(self, node: Node, env: Environment) -> Value:
        callee_node = node.kid(0)
        callee = env.get(callee_node.text, location=callee_node.location)
        arg_nodes = node.kid(1).children if node.num_kids == 2 else []

        if callee.type == TYPE_INTRINSIC:
            args = [self._evaluate(arg, env) for arg in arg_nodes]
            return self.intrinsics.invoke(self, callee.value, args, node.location)
        if callee.type == TYPE_FUNCTION:
            function: Function = callee.value
            if len(arg_nodes) != len(function.params):
                raise MiniEvaluationError(
                    f"Function '{function.name}' expects {len(function.params)} argument(s) but got {len(arg_nodes)}",
                    location=node.location,
                    rule="FNCALL",
                )
            args = [self._evaluate(arg, env) for arg in arg_nodes]
            return self._call_function(function, args, node.location)
        raise MiniEvaluationError(f"'{callee_node.text}' is not a function", location=node.location, rule="FNCALL")

    def _call_function(self, function: Function, args: List[Value], call_location: Location) -> Value:
        if len(self.call_stack) > self.max_depth:
            raise MiniEvaluationError("Maximum call depth exceeded", location=call_location, rule="FNCALL")
        # parent is the defining scope, not the caller's
        env = function.closure.child()
        for name, arg in zip(function.params, args):
            env.define(name, arg, location=call_location)
        arguments = {name: arg.as_str() for name, arg in zip(function.params, args)}
        frame = self._new_frame(function.name, env, call_location, arguments)
        self.call_stack.append(frame)
        self._log_step(rule="FNCALL", location=call_location, env=env)
        result = self._evaluate(function.body, env)
        # frames of failed calls stay behind for the traceback
        self.call_stack.pop()
        self.step_log.release(frame)
        return result

    def _expect_int(self, value: Value, node: Node) -> int:
        if value.type != TYPE_INT:
            raise MiniEvaluationError(
                f"{node.kind} expects an integer operand but got {value.as_str()}",
                location=node.location,
                rule=node.kind,
            )
        return value.value

    def _new_frame(
        self,
        name: str,
        env: Environment,
        call_location: Optional[Location] = None,
        arguments: Optional[Dict[str, str]] = None,
    ) -> Frame:
        self.frame_counter += 1
        return Frame(name, env, self.frame_counter, call_location, arguments or {})

    def _log_step(self, *, rule: str, location: Optional[Location], env: Environment) -> None:
        self.step_log.record(
            rule,
            self.call_stack[-1],
            len(self.call_stack) - 1,
            location,
            self.source_line(location),
            env.snapshot() if self.verbose else None,
        )


def parse_source(text: str, filename: str = "<string>", *, max_depth: int = DEFAULT_MAX_DEPTH) -> Node:
    lexer = Lexer.from_text(text, filename)
    with recursion_headroom(max_depth):
        try:
            return Parser(lexer).parse()
        except RecursionError:
            raise MiniSyntaxError(
                "Maximum nesting depth exceeded", location=lexer.current_location(), rule="nesting"
            ) from None


def run_source(text: str, filename: str = "<string>", **options: Any) -> Value:
    """Parse, analyze and execute a program, returning the value of its last statement."""
    unit = parse_source(text, filename, max_depth=options.get("max_depth", DEFAULT_MAX_DEPTH))
    interpreter = Interpreter(unit, filename=filename, source=text, **options)
    interpreter.analyze()
    return interpreter.execute()


def _location_json(location: Optional[Location]) -> Optional[Dict[str, Any]]:
    if location is None:
        return None
    return {"file": location.file, "line": location.line, "column": location.column}


@dataclass
class TracebackEntry:
    frame: Frame
    step: Optional[Step]

    @property
    def location(self) -> Optional[Location]:
        return self.step.location if self.step is not None else self.frame.call_location


class TracebackFormatter:
    """Renders the call stack left behind by a failed run.

    Each active call is shown with its arguments and the last statement it
    reached. Output recorded by the intrinsics is included in the JSON form.
    """

    RECENT_OUTPUT = 5

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def entries(self) -> List[TracebackEntry]:
        log = self.interpreter.step_log
        return [TracebackEntry(frame, log.latest(frame)) for frame in self.interpreter.call_stack]

    def format_text(self, error: MiniError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for entry in self.entries():
            location = entry.location
            where = "<unknown location>"
            if location is not None:
                where = f'File "{location.file}", line {location.line}, column {location.column}'
            lines.append(f"  {where}, in {entry.frame.signature()}")
            step = entry.step
            if step is None:
                continue
            if step.statement:
                lines.append(f"    {step.statement}")
            lines.append(f"    [step {step.index}: {step.kind}]")
            if verbose and step.env_snapshot is not None:
                visible = ", ".join(f"{k}={v}" for k, v in step.env_snapshot.items())
                lines.append(f"    scope: {visible or '<empty>'}")
        lines.append(f"{type(error).__name__}: {error}")
        return "\n".join(lines)

    def to_dict(self, error: MiniError) -> Dict[str, Any]:
        stack: List[Dict[str, Any]] = []
        for depth, entry in enumerate(self.entries()):
            record: Dict[str, Any] = {
                "depth": depth,
                "function": entry.frame.name,
                "arguments": dict(entry.frame.arguments),
                "called_from": _location_json(entry.frame.call_location),
                "last_step": None,
            }
            step = entry.step
            if step is not None:
                record["last_step"] = {
                    "index": step.index,
                    "kind": step.kind,
                    "location": _location_json(step.location),
                    "statement": step.statement,
                    "scope": step.env_snapshot,
                }
            stack.append(record)
        recent = list(self.interpreter.io_log)[-self.RECENT_OUTPUT:]
        return {
            "error": {
                "type": type(error).__name__,
                "message": error.message,
                "rule": error.rule,
                "location": _location_json(error.location),
                "step": error.step_index,
            },
            "call_stack": stack,
            "recent_output": [event["text"] for event in recent],
        }

    def to_json(self, error: MiniError) -> str:
        return json.dumps(self.to_dict(error), indent=2)
