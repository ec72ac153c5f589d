"""SchemaParser: read a Rails ``db/schema.rb`` into typed table records.

The parser is line-oriented and forgiving: statements it does not
recognise are skipped, never rejected.  A missing or unreadable schema file
yields ``None`` rather than an error, because plenty of projects have no
database at all.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from railsight.index.inflection import model_name_for, pluralize, singularize, table_name_for

logger = logging.getLogger(__name__)

# Column types accepted in ``t.<type> "name"`` statements.
COLUMN_TYPES = frozenset({
    "string", "text", "integer", "bigint", "float", "decimal", "numeric",
    "boolean", "date", "datetime", "timestamp", "time", "binary",
    "json", "jsonb", "hstore", "uuid", "inet", "citext", "array",
    "references", "belongs_to",
})

_FOREIGN_KEY_TYPES = frozenset({"references", "belongs_to"})

# How many lines before a table's ``end`` are searched for ``t.timestamps``.
_TIMESTAMPS_WINDOW = 5

_VERSION_RE = re.compile(r"ActiveRecord::Schema(?:\[\d+\.\d+\])?\.define\(\s*version:\s*([\d_]+)\s*\)")
_CREATE_TABLE_RE = re.compile(r"""^create_table\s+["'](\w+)["'](?:,\s*(.+?))?\s+do\s*\|(\w+)\|""")
_COLUMN_RE = re.compile(r"""^(\w+)\.(\w+)\s+["'](\w+)["'](?:,\s*(.+))?""")
_INDEX_RE = re.compile(r"""^\w+\.index\s+\[(.+?)\](?:,\s*(.+))?""")
_ADD_INDEX_RE = re.compile(r"""^add_index\s+["'](\w+)["'],\s*\[(.+?)\](?:,\s*(.+))?""")
_ADD_FK_RE = re.compile(r"""^add_foreign_key\s+["'](\w+)["'],\s*["'](\w+)["']""")
_DEFAULT_RE = re.compile(r"default:\s*(.+?)(?:,\s*\w+:|$)")
_NAME_RE = re.compile(r"""name:\s*["'](.+?)["']""")


@dataclass(frozen=True)
class ForeignKey:
    table: str
    column: str = "id"


@dataclass
class Column:
    name: str
    type: str
    nullable: bool = True
    default: str | None = None
    primary_key: bool = False
    foreign_key: ForeignKey | None = None


@dataclass
class Index:
    columns: list[str]
    unique: bool = False
    name: str = ""


@dataclass
class Table:
    name: str
    columns: list[Column] = field(default_factory=list)
    indexes: list[Index] = field(default_factory=list)
    primary_key: list[str] = field(default_factory=list)

    def get_column(self, name: str) -> Column | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None


@dataclass
class DatabaseSchema:
    tables: dict[str, Table] = field(default_factory=dict)
    version: str = ""


def _split_columns(raw: str) -> list[str]:
    return [c.strip().strip("\"'") for c in raw.split(",") if c.strip()]


def parse_schema(text: str) -> DatabaseSchema:
    """Parse schema.rb source text.  Never raises on malformed statements."""
    schema = DatabaseSchema()
    lines = text.splitlines()
    current: Table | None = None
    block_var = "t"
    pending_foreign_keys: list[tuple[str, str]] = []

    for i, raw in enumerate(lines):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        m = _VERSION_RE.search(line)
        if m:
            schema.version = m.group(1).replace("_", "")
            continue

        m = _CREATE_TABLE_RE.match(line)
        if m:
            current = Table(name=m.group(1))
            block_var = m.group(3)
            options = m.group(2) or ""
            if not re.search(r"\bid:\s*false\b", options):
                current.columns.append(
                    Column(name="id", type="bigint", nullable=False, primary_key=True)
                )
                current.primary_key = ["id"]
            continue

        if current is not None:
            if line == "end":
                _finish_table(current, lines[max(0, i - _TIMESTAMPS_WINDOW):i], block_var)
                schema.tables[current.name] = current
                current = None
                continue

            if line.startswith(f"{block_var}.index"):
                index = _parse_index(line)
                if index is not None:
                    current.indexes.append(index)
                continue

            if line.startswith(f"{block_var}."):
                column = _parse_column(line, block_var)
                if column is not None:
                    current.columns.append(column)
                continue

        m = _ADD_INDEX_RE.match(line)
        if m:
            table = schema.tables.get(m.group(1))
            if table is not None:
                table.indexes.append(_build_index(m.group(2), m.group(3)))
            continue

        m = _ADD_FK_RE.match(line)
        if m:
            pending_foreign_keys.append((m.group(1), m.group(2)))
            continue

    # Foreign keys are usually declared after every table block.
    for from_table, to_table in pending_foreign_keys:
        _apply_foreign_key(schema, from_table, to_table)

    return schema


def _finish_table(table: Table, preceding: list[str], block_var: str) -> None:
    """Synthesize timestamp columns when ``t.timestamps`` closes the block."""
    marker = f"{block_var}.timestamps"
    if not any(marker in line for line in preceding):
        return
    for name in ("created_at", "updated_at"):
        if table.get_column(name) is None:
            table.columns.append(Column(name=name, type="datetime", nullable=False))


def _parse_column(line: str, block_var: str) -> Column | None:
    m = _COLUMN_RE.match(line)
    if not m or m.group(1) != block_var:
        return None
    col_type, name, options = m.group(2), m.group(3), m.group(4) or ""
    if col_type not in COLUMN_TYPES:
        logger.debug("Skipping unknown column type %r for %s", col_type, name)
        return None

    column = Column(name=name, type=col_type)
    if re.search(r"\bnull:\s*false\b", options):
        column.nullable = False
    d = _DEFAULT_RE.search(options)
    if d:
        column.default = d.group(1).strip()
    if col_type in _FOREIGN_KEY_TYPES:
        column.foreign_key = ForeignKey(table=pluralize(name))
    return column


def _parse_index(line: str) -> Index | None:
    m = _INDEX_RE.match(line)
    if not m:
        return None
    return _build_index(m.group(1), m.group(2))


def _build_index(columns: str, options: str | None) -> Index:
    options = options or ""
    index = Index(columns=_split_columns(columns))
    if re.search(r"\bunique:\s*true\b", options):
        index.unique = True
    n = _NAME_RE.search(options)
    if n:
        index.name = n.group(1)
    return index


def _apply_foreign_key(schema: DatabaseSchema, from_table: str, to_table: str) -> None:
    table = schema.tables.get(from_table)
    if table is None:
        return
    for candidate in (f"{singularize(to_table)}_id", f"{to_table}_id"):
        column = table.get_column(candidate)
        if column is not None:
            column.foreign_key = ForeignKey(table=to_table)
            return
    logger.debug("No column for foreign key %s -> %s", from_table, to_table)


class SchemaParser:
    """Holds the most recently parsed schema and answers table lookups.

    Parameters
    ----------
    schema_path:
        Location of ``schema.rb``.  May point at a file that does not exist.
    """

    def __init__(self, schema_path: Path | None = None) -> None:
        self._path = schema_path
        self._schema: DatabaseSchema | None = None

    @property
    def schema(self) -> DatabaseSchema | None:
        return self._schema

    def load(self) -> DatabaseSchema | None:
        """(Re)parse the schema file.  Returns None if it is absent or unreadable."""
        if self._path is None or not self._path.is_file():
            logger.info("No schema file found at %s", self._path)
            self._schema = None
            return None
        try:
            text = self._path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Cannot read schema %s: %s", self._path, exc)
            self._schema = None
            return None
        self._schema = parse_schema(text)
        logger.info("Parsed database schema: %d tables", len(self._schema.tables))
        return self._schema

    def load_text(self, text: str) -> DatabaseSchema:
        self._schema = parse_schema(text)
        return self._schema

    def get_table(self, table_name: str) -> Table | None:
        if self._schema is None:
            return None
        return self._schema.tables.get(table_name)

    def get_table_names(self) -> list[str]:
        if self._schema is None:
            return []
        return list(self._schema.tables)

    def get_column_names(self, table_name: str) -> list[str]:
        table = self.get_table(table_name)
        return [c.name for c in table.columns] if table else []

    @staticmethod
    def get_model_name_from_table(table_name: str) -> str:
        return model_name_for(table_name)

    @staticmethod
    def get_table_name_from_model(model_name: str) -> str:
        return table_name_for(model_name)
