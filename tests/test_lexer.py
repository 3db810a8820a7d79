"""
Tests for the character reader and the lazy token stream.
"""

import pytest

from lexer import Lexer, Location, MiniSyntaxError, SourceReader


class TestTokenKinds:
    """Classification of keywords, identifiers, literals and punctuation."""

    def test_punctuation(self, kinds):
        assert kinds("+ - * / ( ) ; { } ,") == [
            "PLUS", "MINUS", "TIMES", "DIVIDE", "LPAREN", "RPAREN",
            "SEMICOLON", "LBRACE", "RBRACE", "COMMA",
        ]

    def test_relational_and_logical(self, kinds):
        assert kinds("= == != < <= > >= && ||") == [
            "EQUAL", "DOUBLE_EQUAL", "NOT_EQUAL", "LESS", "LESS_EQUAL",
            "GREATER", "GREATER_EQUAL", "DOUBLE_AMPERSAND", "DOUBLE_PIPE",
        ]

    def test_keywords_are_exact_matches(self, kinds):
        assert kinds("var function if else while") == ["VAR", "FUNCTION", "IF", "ELSE", "WHILE"]
        assert kinds("variable If whilex x1") == ["IDENTIFIER"] * 4

    def test_digits_then_letters_split(self):
        tokens = Lexer.from_text("123abc").tokenize()
        assert [(t.kind, t.lexeme) for t in tokens] == [
            ("INTEGER_LITERAL", "123"),
            ("IDENTIFIER", "abc"),
        ]

    def test_operators_without_spaces(self, kinds):
        assert kinds("a<=b") == ["IDENTIFIER", "LESS_EQUAL", "IDENTIFIER"]
        assert kinds("a=b") == ["IDENTIFIER", "EQUAL", "IDENTIFIER"]
        assert kinds("a==b") == ["IDENTIFIER", "DOUBLE_EQUAL", "IDENTIFIER"]
        assert kinds("x=<y") == ["IDENTIFIER", "EQUAL", "LESS", "IDENTIFIER"]
        assert kinds("a!=b&&c||d") == [
            "IDENTIFIER", "NOT_EQUAL", "IDENTIFIER", "DOUBLE_AMPERSAND",
            "IDENTIFIER", "DOUBLE_PIPE", "IDENTIFIER",
        ]

    def test_relexing_lexemes_is_stable(self, kinds):
        text = "function f(a,b){var c;c=a<=b||a!=b;while(c){c=c-1;}}"
        lexemes = [t.lexeme for t in Lexer.from_text(text)]
        assert kinds(" ".join(lexemes)) == kinds(text)


class TestLocations:
    def test_token_start_positions(self):
        tokens = Lexer.from_text("var a;\n  a = 1;", "prog.ml").tokenize()
        positions = [(t.lexeme, t.location.line, t.location.column) for t in tokens]
        assert positions == [
            ("var", 1, 1), ("a", 1, 5), (";", 1, 6),
            ("a", 2, 3), ("=", 2, 5), ("1", 2, 7), (";", 2, 8),
        ]
        assert tokens[0].location.file == "prog.ml"

    def test_location_str(self):
        assert str(Location("prog.ml", 3, 14)) == "prog.ml:3:14"

    def test_unread_newline_restores_position(self):
        reader = SourceReader.from_text("a\nb", "<string>")
        assert reader.read() == "a"
        assert reader.read() == "\n"
        assert (reader.line, reader.column) == (2, 1)
        reader.unread("\n")
        assert (reader.line, reader.column) == (1, 2)
        assert reader.read() == "\n"
        assert reader.read() == "b"
        assert reader.read() == ""


class TestLookahead:
    def test_peek_does_not_consume(self):
        lexer = Lexer.from_text("a = 1;")
        assert lexer.peek(2).kind == "EQUAL"
        assert lexer.peek(1).lexeme == "a"
        assert lexer.peek(4).kind == "SEMICOLON"
        assert lexer.next().lexeme == "a"
        assert lexer.next().kind == "EQUAL"

    def test_peek_past_end_is_none(self):
        lexer = Lexer.from_text("a;")
        assert lexer.peek(3) is None
        assert lexer.peek(2).kind == "SEMICOLON"

    def test_peek_rejects_zero_distance(self):
        with pytest.raises(ValueError):
            Lexer.from_text("a").peek(0)

    def test_next_at_end_raises(self):
        lexer = Lexer.from_text("   ")
        assert lexer.peek() is None
        with pytest.raises(MiniSyntaxError, match="Unexpected end of input"):
            lexer.next()


class TestLexErrors:
    def test_single_ampersand(self):
        with pytest.raises(MiniSyntaxError) as info:
            Lexer.from_text("a & b").tokenize()
        assert "expected '&&'" in info.value.message
        assert (info.value.location.line, info.value.location.column) == (1, 4)

    def test_lone_bang_at_end(self):
        with pytest.raises(MiniSyntaxError, match="expected '!='"):
            Lexer.from_text("a !").tokenize()

    def test_single_pipe(self):
        with pytest.raises(MiniSyntaxError, match=r"expected '\|\|'"):
            Lexer.from_text("a | b").tokenize()

    def test_unrecognized_character_location(self):
        with pytest.raises(MiniSyntaxError) as info:
            Lexer.from_text("x;\n  @", "prog.ml").tokenize()
        assert info.value.message == "Unrecognized character '@'"
        assert str(info.value) == "prog.ml:2:4: Unrecognized character '@'"

    def test_error_surfaces_lazily(self):
        lexer = Lexer.from_text("a ; #")
        assert lexer.next().kind == "IDENTIFIER"
        assert lexer.next().kind == "SEMICOLON"
        with pytest.raises(MiniSyntaxError):
            lexer.next()
