"""
Pydantic schemas for the normalized source schema model.

Produced by the introspector from the source catalog, consumed by the
provisioner (CREATE TABLE) and persisted in part as foreign-key metadata on
the sync record. Nothing here is stored as-is.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List


class SourceColumn(BaseModel):
    """Column as reported by the source catalog"""
    name: str = Field(..., min_length=1)
    type: str = Field(..., description="Bare data type, e.g. varchar")
    column_type: Optional[str] = Field(None, description="Full type with params, e.g. varchar(255)")
    nullable: bool = True
    primary_key: bool = False
    auto_increment: bool = False
    default_value: Optional[str] = None
    extra: Optional[str] = None

    @validator("type", "column_type", pre=True)
    def lower_type(cls, v):
        if v is None:
            return v
        if isinstance(v, bytes):
            v = v.decode("utf-8", errors="replace")
        return str(v).strip().lower()


class TargetColumn(BaseModel):
    """Column as it will be created in the target store"""
    name: str
    type: str
    nullable: bool = True
    primary_key: bool = False
    default_expression: Optional[str] = None


class TableSchema(BaseModel):
    """One source table with its columns and observed row count"""
    table_name: str
    columns: List[SourceColumn] = Field(default_factory=list)
    primary_keys: List[str] = Field(default_factory=list)
    auto_increment_column: Optional[str] = None
    row_count: int = Field(default=0, ge=0)


class ColumnPair(BaseModel):
    source_column: str
    target_column: str


class ForeignKeyDef(BaseModel):
    """Foreign key constraint with its ordered column pairs"""
    constraint_name: str
    source_table: str
    target_table: str
    column_pairs: List[ColumnPair] = Field(default_factory=list)
    update_rule: Optional[str] = None
    delete_rule: Optional[str] = None


class DatabaseSchema(BaseModel):
    tables: List[TableSchema] = Field(default_factory=list)
    foreign_keys: List[ForeignKeyDef] = Field(default_factory=list)

    def get_table(self, table_name: str) -> Optional[TableSchema]:
        for table in self.tables:
            if table.table_name == table_name:
                return table
        return None


class TableDefinition(BaseModel):
    """Input to the provisioner's create_table"""
    table_name: str
    columns: List[SourceColumn]
    primary_keys: List[str] = Field(default_factory=list)

    @classmethod
    def from_table_schema(cls, table: TableSchema) -> "TableDefinition":
        return cls(
            table_name=table.table_name,
            columns=table.columns,
            primary_keys=table.primary_keys,
        )
