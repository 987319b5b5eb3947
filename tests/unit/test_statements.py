"""Unit tests for splitting migration scripts into statements and sections."""

import pytest

from portunus.services.statements import ScriptSyntaxError, split_sections, split_statements


class TestSplitStatements:
    """Tests for split_statements."""

    def test_splits_on_semicolons(self):
        """Each top-level semicolon ends a statement."""
        script = "CREATE TABLE a (id INTEGER);\nCREATE TABLE b (id INTEGER);\n"
        assert split_statements(script) == [
            "CREATE TABLE a (id INTEGER)",
            "CREATE TABLE b (id INTEGER)",
        ]

    def test_last_statement_without_semicolon(self):
        """A trailing statement without a semicolon is kept."""
        assert split_statements("SELECT 1;\nSELECT 2") == ["SELECT 1", "SELECT 2"]

    def test_comment_only_fragments_dropped(self):
        """Fragments holding only comments and whitespace are not statements."""
        script = "SELECT 1;\n-- trailing note; with a semicolon\n/* block; */\n;"
        assert split_statements(script) == ["SELECT 1"]

    def test_empty_script(self):
        """An empty or comment-only script has no statements."""
        assert split_statements("") == []
        assert split_statements("-- nothing to see\n") == []

    def test_semicolon_inside_string(self):
        """Semicolons in quoted literals do not split."""
        script = "INSERT INTO t VALUES ('a;b', 'it''s;');SELECT 2;"
        assert split_statements(script) == [
            "INSERT INTO t VALUES ('a;b', 'it''s;')",
            "SELECT 2",
        ]

    def test_semicolon_inside_quoted_identifier(self):
        """Double-quoted identifiers are skipped too."""
        assert split_statements('CREATE TABLE "odd;name" (id INTEGER);') == [
            'CREATE TABLE "odd;name" (id INTEGER)'
        ]

    def test_nested_block_comment(self):
        """Block comments nest, as in PostgreSQL."""
        script = "/* outer /* inner; */ still comment; */ SELECT 1;"
        statements = split_statements(script)
        assert len(statements) == 1
        assert statements[0].endswith("SELECT 1")

    def test_dollar_quoted_function_body(self):
        """PostgreSQL function bodies are one statement."""
        script = (
            "CREATE FUNCTION touch() RETURNS trigger AS $$\n"
            "BEGIN\n  NEW.updated_at = now();\n  RETURN NEW;\nEND;\n"
            "$$ LANGUAGE plpgsql;\n"
            "SELECT 1;"
        )
        statements = split_statements(script)
        assert len(statements) == 2
        assert statements[0].startswith("CREATE FUNCTION touch()")
        assert statements[0].endswith("LANGUAGE plpgsql")

    def test_tagged_dollar_quote(self):
        """Tagged dollar quotes may contain $$."""
        script = "DO $body$ BEGIN PERFORM '$$;'; END $body$;SELECT 1"
        assert split_statements(script) == ["DO $body$ BEGIN PERFORM '$$;'; END $body$", "SELECT 1"]

    def test_positional_parameter_is_not_a_dollar_quote(self):
        """$1 is a parameter, not the start of a quote."""
        assert split_statements("SELECT $1;SELECT 2") == ["SELECT $1", "SELECT 2"]

    def test_trigger_body_is_one_statement(self):
        """Semicolons between a trigger's BEGIN and END do not split."""
        script = (
            "CREATE TRIGGER audit AFTER INSERT ON users BEGIN\n"
            "  INSERT INTO log VALUES (NEW.id);\n"
            "  UPDATE stats SET n = CASE WHEN n IS NULL THEN 1 ELSE n + 1 END;\n"
            "END;\n"
            "CREATE INDEX idx ON users (id);"
        )
        statements = split_statements(script)
        assert len(statements) == 2
        assert statements[0].endswith("END")
        assert statements[1] == "CREATE INDEX idx ON users (id)"

    def test_begin_outside_trigger_splits(self):
        """BEGIN in an ordinary statement does not open a block."""
        assert split_statements("BEGIN;SELECT 1;COMMIT;") == ["BEGIN", "SELECT 1", "COMMIT"]

    def test_unterminated_quote_raises(self):
        """An unterminated literal is a syntax error."""
        with pytest.raises(ScriptSyntaxError) as exc_info:
            split_statements("SELECT 'oops;")
        assert exc_info.value.offset == 7

    def test_unterminated_block_comment_raises(self):
        """An unterminated block comment is a syntax error."""
        with pytest.raises(ValueError):
            split_statements("SELECT 1; /* never closed")

    def test_unterminated_dollar_quote_raises(self):
        """An unterminated dollar quote is a syntax error."""
        with pytest.raises(ScriptSyntaxError):
            split_statements("DO $$ BEGIN NULL;")


class TestSplitSections:
    """Tests for split_sections."""

    def test_no_markers(self):
        """Without markers the whole script is the up section."""
        script = "CREATE TABLE a (id INTEGER);"
        assert split_sections(script) == (script, None)

    def test_migrate_markers(self):
        """-- migrate:up / -- migrate:down separate the sections."""
        up, down = split_sections(
            "-- migrate:up\nCREATE TABLE a (id INTEGER);\n-- migrate:down\nDROP TABLE a;\n"
        )
        assert split_statements(up) == ["CREATE TABLE a (id INTEGER)"]
        assert split_statements(down) == ["DROP TABLE a"]

    def test_heading_markers(self):
        """-- Up Migration / -- Down Migration headings are accepted."""
        up, down = split_sections(
            "-- Up Migration\n"
            "ALTER TABLE users ADD CONSTRAINT users_email_unique UNIQUE (email);\n\n"
            "-- Down Migration\n"
            "ALTER TABLE users DROP CONSTRAINT users_email_unique;\n"
        )
        assert split_statements(up) == [
            "ALTER TABLE users ADD CONSTRAINT users_email_unique UNIQUE (email)"
        ]
        assert split_statements(down) == ["ALTER TABLE users DROP CONSTRAINT users_email_unique"]

    def test_up_only_marker(self):
        """An up marker without a down marker leaves down unset."""
        up, down = split_sections("-- migrate:up\nSELECT 1;")
        assert split_statements(up) == ["SELECT 1"]
        assert down is None

    def test_comments_before_first_marker_allowed(self):
        """A comment header before the first marker is fine."""
        up, _ = split_sections("-- add users\n-- migrate:up\nSELECT 1;")
        assert split_statements(up) == ["SELECT 1"]

    def test_statements_before_first_marker_rejected(self):
        """Statements outside any section are an error."""
        with pytest.raises(ValueError, match="before the first section marker"):
            split_sections("SELECT 0;\n-- migrate:up\nSELECT 1;")

    def test_repeated_section_rejected(self):
        """Each section may appear once."""
        with pytest.raises(ValueError, match="more than one up section"):
            split_sections("-- migrate:up\nSELECT 1;\n-- migrate:up\nSELECT 2;")

    def test_down_without_up_rejected(self):
        """A down section needs an up section."""
        with pytest.raises(ValueError, match="down section without an up section"):
            split_sections("-- migrate:down\nDROP TABLE a;")

    def test_heading_words_in_ordinary_comment(self):
        """A comment that merely starts with "Down migration" is not a section."""
        script = "ALTER TABLE users ADD COLUMN nick TEXT;\n-- Down migration intentionally omitted\n"
        assert split_sections(script) == (script, None)

    def test_heading_before_any_up_heading(self):
        script = "-- Down migration: none, backfill only\nUPDATE users SET nick = name;\n"
        assert split_sections(script) == (script, None)

    def test_heading_comment_inside_up_section(self):
        """Under an up heading, a trailing "down" comment is an empty down section."""
        up, down = split_sections(
            "-- Up Migration\nALTER TABLE users ADD COLUMN nick TEXT;\n-- Down migration not possible\n"
        )
        assert split_statements(up) == ["ALTER TABLE users ADD COLUMN nick TEXT"]
        assert split_statements(down) == []
