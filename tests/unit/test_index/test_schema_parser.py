"""Tests for the schema.rb parser."""

from __future__ import annotations

from pathlib import Path

from railsight.index.schema_parser import SchemaParser, parse_schema


class TestParseSchema:
    def test_reads_version(self) -> None:
        schema = parse_schema('ActiveRecord::Schema[7.1].define(version: 2024_05_01_120000) do\nend\n')
        assert schema.version == "20240501120000"

    def test_implicit_id_column_comes_first(self, rails_project: Path) -> None:
        schema = parse_schema((rails_project / "db" / "schema.rb").read_text())
        users = schema.tables["users"]
        assert users.columns[0].name == "id"
        assert users.columns[0].primary_key is True
        assert users.columns[0].nullable is False
        assert users.primary_key == ["id"]

    def test_column_order_and_nullability(self, rails_project: Path) -> None:
        schema = parse_schema((rails_project / "db" / "schema.rb").read_text())
        users = schema.tables["users"]
        assert [c.name for c in users.columns] == ["id", "email", "name", "created_at", "updated_at"]
        assert users.get_column("email").nullable is False
        assert users.get_column("name").nullable is True

    def test_id_false_suppresses_primary_key(self) -> None:
        schema = parse_schema(
            'create_table "tags_posts", id: false, force: :cascade do |t|\n'
            '  t.bigint "tag_id"\n'
            "end\n"
        )
        table = schema.tables["tags_posts"]
        assert [c.name for c in table.columns] == ["tag_id"]
        assert table.primary_key == []

    def test_timestamps_added_once(self) -> None:
        schema = parse_schema(
            'create_table "events" do |t|\n'
            '  t.datetime "created_at", null: false\n'
            "  t.timestamps\n"
            "end\n"
        )
        names = [c.name for c in schema.tables["events"].columns]
        assert names.count("created_at") == 1
        assert names.count("updated_at") == 1

    def test_no_timestamps_without_marker(self) -> None:
        schema = parse_schema('create_table "flags" do |t|\n  t.boolean "on"\nend\n')
        assert schema.tables["flags"].get_column("created_at") is None

    def test_default_value(self, rails_project: Path) -> None:
        schema = parse_schema((rails_project / "db" / "schema.rb").read_text())
        assert schema.tables["posts"].get_column("metadata").default == "{}"

    def test_foreign_key_applied_to_column(self, rails_project: Path) -> None:
        schema = parse_schema((rails_project / "db" / "schema.rb").read_text())
        fk = schema.tables["posts"].get_column("user_id").foreign_key
        assert fk is not None
        assert fk.table == "users"
        assert fk.column == "id"

    def test_indexes(self) -> None:
        schema = parse_schema(
            'create_table "users" do |t|\n'
            '  t.string "email"\n'
            '  t.index ["email"], name: "index_users_on_email", unique: true\n'
            "end\n"
            'add_index "users", ["name", "email"]\n'
        )
        indexes = schema.tables["users"].indexes
        assert indexes[0].columns == ["email"]
        assert indexes[0].unique is True
        assert indexes[0].name == "index_users_on_email"
        assert indexes[1].columns == ["name", "email"]
        assert indexes[1].unique is False

    def test_unknown_statements_are_skipped(self) -> None:
        schema = parse_schema(
            'enable_extension "plpgsql"\n'
            'create_table "notes" do |t|\n'
            '  t.geometry "shape"\n'
            '  t.text "body"\n'
            "end\n"
        )
        assert [c.name for c in schema.tables["notes"].columns] == ["id", "body"]


class TestSchemaParser:
    def test_missing_file_yields_none(self, tmp_path: Path) -> None:
        parser = SchemaParser(tmp_path / "db" / "schema.rb")
        assert parser.load() is None
        assert parser.get_table("users") is None
        assert parser.get_table_names() == []

    def test_load_and_lookups(self, rails_project: Path) -> None:
        parser = SchemaParser(rails_project / "db" / "schema.rb")
        assert parser.load() is not None
        assert sorted(parser.get_table_names()) == ["posts", "users"]
        assert "title" in parser.get_column_names("posts")
        assert parser.get_column_names("missing") == []

    def test_model_table_name_conversion(self) -> None:
        assert SchemaParser.get_model_name_from_table("line_items") == "LineItem"
        assert SchemaParser.get_table_name_from_model("Admin::LineItem") == "line_items"
