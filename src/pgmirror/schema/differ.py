"""
Structural comparison of two stores' schemas.

Only additive differences are actionable: tables and columns present in the
source but not the target. Everything else is reported and left alone.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from ..database.introspection import ColumnDescriptor, TableSchema


logger = logging.getLogger(__name__)


@dataclass
class ColumnMismatch:
    """A column present in both stores with a different definition."""

    table_name: str
    column_name: str
    source_type: str
    target_type: str
    source_nullable: bool
    target_nullable: bool

    def __str__(self) -> str:
        parts = []
        if self.source_type != self.target_type:
            parts.append(f"type {self.source_type} != {self.target_type}")
        if self.source_nullable != self.target_nullable:
            parts.append(
                f"nullable {self.source_nullable} != {self.target_nullable}"
            )
        return f"{self.table_name}.{self.column_name}: {', '.join(parts)}"


@dataclass
class SchemaDiff:
    """Differences between a source and a target schema."""

    missing_tables: List[TableSchema] = field(default_factory=list)
    missing_columns: Dict[str, List[ColumnDescriptor]] = field(default_factory=dict)
    type_mismatches: List[ColumnMismatch] = field(default_factory=list)
    extra_tables: List[str] = field(default_factory=list)
    extra_columns: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        """True when there is nothing for the applier to do."""
        return not self.missing_tables and not self.missing_columns

    @property
    def change_count(self) -> int:
        return len(self.missing_tables) + sum(
            len(cols) for cols in self.missing_columns.values()
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "missing_tables": [t.table_name for t in self.missing_tables],
            "missing_columns": {
                table: [c.name for c in columns]
                for table, columns in self.missing_columns.items()
            },
            "type_mismatches": [str(m) for m in self.type_mismatches],
            "extra_tables": list(self.extra_tables),
            "extra_columns": {k: list(v) for k, v in self.extra_columns.items()},
        }


class SchemaDiffer:
    """Computes a SchemaDiff from two inspection results."""

    def diff(
        self,
        source_schemas: Sequence[TableSchema],
        target_schemas: Sequence[TableSchema],
    ) -> SchemaDiff:
        """
        Compare source tables against target tables.

        Names match case-sensitively and exactly. Output follows the order of
        ``source_schemas``; missing columns keep their ordinal order.
        """
        result = SchemaDiff()
        targets = {t.table_name: t for t in target_schemas}
        source_names = {t.table_name for t in source_schemas}

        for source in source_schemas:
            target = targets.get(source.table_name)
            if target is None:
                result.missing_tables.append(source)
                continue

            target_columns = {c.name: c for c in target.columns}
            missing = []
            for column in sorted(source.columns, key=lambda c: c.ordinal_position):
                existing = target_columns.get(column.name)
                if existing is None:
                    missing.append(column)
                elif (
                    existing.type_signature != column.type_signature
                    or existing.nullable != column.nullable
                ):
                    mismatch = ColumnMismatch(
                        table_name=source.table_name,
                        column_name=column.name,
                        source_type=column.type_signature,
                        target_type=existing.type_signature,
                        source_nullable=column.nullable,
                        target_nullable=existing.nullable,
                    )
                    logger.warning(f"Column definition differs, not altering: {mismatch}")
                    result.type_mismatches.append(mismatch)

            if missing:
                result.missing_columns[source.table_name] = missing

            source_column_names = set(source.column_names)
            extra = [c for c in target.column_names if c not in source_column_names]
            if extra:
                result.extra_columns[source.table_name] = extra

        result.extra_tables = [
            t.table_name for t in target_schemas if t.table_name not in source_names
        ]

        logger.info(
            f"Schema diff: {len(result.missing_tables)} missing table(s), "
            f"{sum(len(c) for c in result.missing_columns.values())} missing column(s), "
            f"{len(result.type_mismatches)} definition mismatch(es)"
        )
        return result
