from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional

from lexer import Lexer, Location, MiniSyntaxError, Token


AST_KINDS = (
    "UNIT",
    "STATEMENT",
    "STATEMENT_LIST",
    "VARDEF",
    "VARREF",
    "INT_LITERAL",
    "ASSIGN",
    "ADD",
    "SUB",
    "MULTIPLY",
    "DIVIDE",
    "LOGICAL_AND",
    "LOGICAL_OR",
    "LESS",
    "LESS_EQUAL",
    "GREATER",
    "GREATER_EQUAL",
    "EQUAL",
    "NOT_EQUAL",
    "IF",
    "WHILE",
    "FUNCTION",
    "PARAMETER_LIST",
    "FNCALL",
    "ARGLIST",
)

ADDITIVE_OPS = {"PLUS": "ADD", "MINUS": "SUB"}
MULTIPLICATIVE_OPS = {"TIMES": "MULTIPLY", "DIVIDE": "DIVIDE"}
LOGICAL_OPS = {"DOUBLE_PIPE": "LOGICAL_OR", "DOUBLE_AMPERSAND": "LOGICAL_AND"}
RELATIONAL_OPS = {
    "LESS": "LESS",
    "LESS_EQUAL": "LESS_EQUAL",
    "GREATER": "GREATER",
    "GREATER_EQUAL": "GREATER_EQUAL",
    "DOUBLE_EQUAL": "EQUAL",
    "NOT_EQUAL": "NOT_EQUAL",
}


@dataclass
class Node:
    kind: str
    location: Optional[Location] = None
    children: List["Node"] = field(default_factory=list)
    text: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind not in AST_KINDS:
            raise ValueError(f"Unknown AST node kind '{self.kind}'")

    def kid(self, index: int) -> "Node":
        return self.children[index]

    @property
    def num_kids(self) -> int:
        return len(self.children)

    def find(self, kind: str) -> Optional["Node"]:
        """First direct child of the given kind, if any."""
        for child in self.children:
            if child.kind == kind:
                return child
        return None

    def label(self) -> str:
        return self.kind if self.text is None else f"{self.kind}[{self.text}]"


class Parser:
    """Recursive-descent LL(2) parser building the AST directly from a Lexer."""

    def __init__(self, lexer: Lexer) -> None:
        self.lexer = lexer
        self.filename = lexer.filename

    def parse(self) -> Node:
        unit = Node("UNIT", location=Location(self.filename, 1, 1))
        unit.children.append(self._parse_toplevel())
        while self.lexer.peek() is not None:
            unit.children.append(self._parse_toplevel())
        return unit

    def _parse_toplevel(self) -> Node:
        token = self._peek_required()
        if token.kind == "FUNCTION":
            return self._parse_func()
        return self._parse_statement()

    def _parse_statement(self) -> Node:
        token = self._peek_required()
        if token.kind == "VAR":
            inner = self._parse_vardef()
        elif token.kind == "IF":
            inner = self._parse_if()
        elif token.kind == "WHILE":
            inner = self._parse_while()
        elif token.kind == "FUNCTION":
            inner = self._parse_func()
        elif token.kind == "LBRACE":
            inner = self._parse_block()
        else:
            inner = self._parse_assignment()
            self._consume("SEMICOLON")
        return Node("STATEMENT", location=token.location, children=[inner])

    def _parse_vardef(self) -> Node:
        keyword = self._consume("VAR")
        ident = self._consume("IDENTIFIER")
        self._consume("SEMICOLON")
        return Node("VARDEF", location=keyword.location, children=[self._varref(ident)])

    def _parse_if(self) -> Node:
        keyword = self._consume("IF")
        condition = self._parse_parenthesized()
        children = [condition, self._parse_block()]
        if self._match("ELSE"):
            children.append(self._parse_block())
        return Node("IF", location=keyword.location, children=children)

    def _parse_while(self) -> Node:
        keyword = self._consume("WHILE")
        condition = self._parse_parenthesized()
        body = self._parse_block()
        return Node("WHILE", location=keyword.location, children=[condition, body])

    def _parse_func(self) -> Node:
        keyword = self._consume("FUNCTION")
        children = [self._varref(self._consume("IDENTIFIER"))]
        self._consume("LPAREN")
        if self._peek_kind() == "IDENTIFIER":
            children.append(self._parse_parameters())
        self._consume("RPAREN")
        children.append(self._parse_block())
        return Node("FUNCTION", location=keyword.location, children=children)

    def _parse_parameters(self) -> Node:
        first = self._consume("IDENTIFIER")
        params = Node("PARAMETER_LIST", location=first.location, children=[self._varref(first)])
        while self._match("COMMA"):
            params.children.append(self._varref(self._consume("IDENTIFIER")))
        return params

    def _parse_block(self) -> Node:
        opening = self._consume("LBRACE")
        block = Node("STATEMENT_LIST", location=opening.location)
        while self._peek_kind() not in (None, "RBRACE"):
            block.children.append(self._parse_statement())
        self._consume("RBRACE")
        return block

    def _parse_parenthesized(self) -> Node:
        self._consume("LPAREN")
        expr = self._parse_assignment()
        self._consume("RPAREN")
        return expr

    def _parse_assignment(self) -> Node:
        # A -> ident = A, decided by the second lookahead token
        token = self._peek_required()
        if token.kind == "IDENTIFIER":
            second = self.lexer.peek(2)
            if second is not None and second.kind == "EQUAL":
                target = self._varref(self._consume("IDENTIFIER"))
                equals = self._consume("EQUAL")
                rhs = self._parse_assignment()
                return Node("ASSIGN", location=equals.location, children=[target, rhs])
        return self._parse_logical()

    def _parse_logical(self) -> Node:
        lhs = self._parse_relational()
        kind = LOGICAL_OPS.get(self._peek_kind())
        if kind is None:
            return lhs
        op = self.lexer.next()
        rhs = self._parse_relational()
        return Node(kind, location=op.location, children=[lhs, rhs])

    def _parse_relational(self) -> Node:
        lhs = self._parse_additive()
        kind = RELATIONAL_OPS.get(self._peek_kind())
        if kind is None:
            return lhs
        op = self.lexer.next()
        rhs = self._parse_additive()
        return Node(kind, location=op.location, children=[lhs, rhs])

    def _parse_additive(self) -> Node:
        expr = self._parse_term()
        while self._peek_kind() in ADDITIVE_OPS:
            op = self.lexer.next()
            rhs = self._parse_term()
            expr = Node(ADDITIVE_OPS[op.kind], location=op.location, children=[expr, rhs])
        return expr

    def _parse_term(self) -> Node:
        expr = self._parse_primary()
        while self._peek_kind() in MULTIPLICATIVE_OPS:
            op = self.lexer.next()
            rhs = self._parse_primary()
            expr = Node(MULTIPLICATIVE_OPS[op.kind], location=op.location, children=[expr, rhs])
        return expr

    def _parse_primary(self) -> Node:
        token = self._peek_required()
        if token.kind == "INTEGER_LITERAL":
            self.lexer.next()
            return Node("INT_LITERAL", location=token.location, text=token.lexeme)
        if token.kind == "IDENTIFIER":
            ident = self.lexer.next()
            callee = self._varref(ident)
            if not self._match("LPAREN"):
                return callee
            children = [callee]
            if self._peek_kind() != "RPAREN":
                children.append(self._parse_arguments())
            self._consume("RPAREN")
            return Node("FNCALL", location=ident.location, children=children)
        if token.kind == "LPAREN":
            return self._parse_parenthesized()
        raise self._unexpected(token)

    def _parse_arguments(self) -> Node:
        # arguments are L, not A: no assignment inside an argument list
        first = self._parse_logical()
        args = Node("ARGLIST", location=first.location, children=[first])
        while self._match("COMMA"):
            args.children.append(self._parse_logical())
        return args

    def _varref(self, ident: Token) -> Node:
        return Node("VARREF", location=ident.location, text=ident.lexeme)

    def _consume(self, kind: str) -> Token:
        token = self.lexer.next()
        if token.kind != kind:
            raise self._unexpected(token)
        return token

    def _match(self, kind: str) -> bool:
        if self._peek_kind() == kind:
            self.lexer.next()
            return True
        return False

    def _peek_kind(self) -> Optional[str]:
        token = self.lexer.peek()
        return token.kind if token is not None else None

    def _peek_required(self) -> Token:
        token = self.lexer.peek()
        if token is None:
            raise MiniSyntaxError("Unexpected end of input", location=self.lexer.current_location())
        return token

    def _unexpected(self, token: Token) -> MiniSyntaxError:
        return MiniSyntaxError(f"Unexpected token '{token.lexeme}'", location=token.location, rule=token.kind)


class TreePrinter:
    """Renders an AST as an indented outline, one node per line."""

    def format(self, node: Node) -> str:
        lines: List[str] = [node.label()]
        self._format_children(node, "", lines)
        return "\n".join(lines)

    def _format_children(self, node: Node, prefix: str, lines: List[str]) -> None:
        for index, child in enumerate(node.children):
            last = index == len(node.children) - 1
            lines.append(f"{prefix}+--{child.label()}")
            self._format_children(child, prefix + ("   " if last else "|  "), lines)
