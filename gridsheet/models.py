from typing import List
from pydantic import BaseModel, Field

class CellRef(BaseModel):
    row: int
    col: int

class GridMeta(BaseModel):
    total_rows: int
    total_columns: int
    batch_size: int
    columns: List[str] = Field(default_factory=list)  # header labels: A, B, ...

class CellView(BaseModel):
    row: int
    col: int
    ref: str
    raw: str = ""
    value: str = ""  # display text: computed result, literal, or "Error: ..."
    is_formula: bool = False
    dependencies: List[str] = Field(default_factory=list)

class RowView(BaseModel):
    row: int
    cells: List[CellView] = Field(default_factory=list)

class RowBatch(BaseModel):
    offset: int
    rows: List[RowView] = Field(default_factory=list)
    has_more: bool = False
    next_offset: int = 0

class GridUpdateCell(BaseModel):
    row: int
    col: int
    value: str

class FillRequest(BaseModel):
    source: CellRef  # drag start; its raw value is copied
    target: CellRef  # drag end

class FillResult(BaseModel):
    updated: List[str] = Field(default_factory=list)
    formula: bool = False
