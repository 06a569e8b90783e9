import os
import json
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from sse_starlette.sse import EventSourceResponse
from dotenv import load_dotenv

load_dotenv()

from gridsheet.engine import GridEngine
from gridsheet.formula import CellKey, index_to_col, is_formula, key_to_ref
from gridsheet.models import CellView, FillRequest, FillResult, GridMeta, GridUpdateCell, RowBatch, RowView

TOTAL_ROWS = int(os.getenv("GRID_TOTAL_ROWS", "1000000"))
TOTAL_COLUMNS = int(os.getenv("GRID_TOTAL_COLUMNS", "10"))
BATCH_SIZE = int(os.getenv("GRID_BATCH_SIZE", "50"))
MAX_BATCH_SIZE = 500
CYCLE_GUARD = os.getenv("GRID_CYCLE_GUARD", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
EVENT_PING_SECONDS = 15.0

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)

engine = GridEngine(TOTAL_COLUMNS, cycle_guard=CYCLE_GUARD)

# One queue per connected /grid/events client
_subscribers: set[asyncio.Queue] = set()


def _broadcast_refresh(key: CellKey, value: str) -> None:
    event = {"type": "cell", "row": key.row, "col": key.col, "value": value}
    for queue in list(_subscribers):
        queue.put_nowait(event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Grid ready: %d rows x %d columns, batch %d, cycle guard %s",
                TOTAL_ROWS, TOTAL_COLUMNS, BATCH_SIZE, "on" if CYCLE_GUARD else "off")
    engine.add_listener(_broadcast_refresh)
    yield
    engine.remove_listener(_broadcast_refresh)
    engine.run_pending()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _check_cell(row: int, col: int) -> None:
    if row < 1 or row > TOTAL_ROWS or col < 0 or col >= TOTAL_COLUMNS:
        raise HTTPException(status_code=404, detail=f"Cell out of range: row={row}, col={col}")


def _cell_view(row: int, col: int, value: Optional[str] = None) -> CellView:
    raw = engine.raw_value(row, col)
    if value is None:
        value = engine.read(row, col)
    return CellView(
        row=row,
        col=col,
        ref=key_to_ref(CellKey(row, col)),
        raw=raw,
        value=value,
        is_formula=is_formula(raw),
        dependencies=[key_to_ref(k) for k in engine.dependencies_of(row, col)],
    )


# ── Grid ─────────────────────────────────────────────────────────────

@app.get("/grid", response_model=GridMeta)
async def get_grid():
    return GridMeta(
        total_rows=TOTAL_ROWS,
        total_columns=TOTAL_COLUMNS,
        batch_size=BATCH_SIZE,
        columns=[index_to_col(i) for i in range(TOTAL_COLUMNS)],
    )

@app.get("/grid/rows", response_model=RowBatch)
async def get_rows(offset: int = 0, limit: Optional[int] = None):
    """Materialize a batch of rows for the virtualized loader.

    Row identifiers are 1-based: offset 0 yields rows 1..limit.
    """
    if limit is None:
        limit = BATCH_SIZE
    if offset < 0 or limit < 1:
        raise HTTPException(status_code=400, detail="offset must be >= 0 and limit >= 1")
    if limit > MAX_BATCH_SIZE:
        raise HTTPException(status_code=400, detail=f"limit exceeds {MAX_BATCH_SIZE} rows")

    end = min(offset + limit, TOTAL_ROWS)
    row_ids = list(range(offset + 1, end + 1))
    rendered = engine.render_rows(row_ids)
    rows = [
        RowView(row=row, cells=[_cell_view(row, col, value) for col, value in enumerate(values)])
        for row, values in zip(row_ids, rendered)
    ]
    return RowBatch(offset=offset, rows=rows, has_more=end < TOTAL_ROWS, next_offset=max(end, offset))

@app.get("/grid/cells/{row}/{col}", response_model=CellView)
async def get_cell(row: int, col: int):
    _check_cell(row, col)
    return _cell_view(row, col)

@app.put("/grid/cell", response_model=CellView)
async def update_cell(req: GridUpdateCell):
    _check_cell(req.row, req.col)
    try:
        engine.edit(req.row, req.col, req.value)
    except RecursionError:
        logger.warning("Circular reference while invalidating row=%d col=%d", req.row, req.col)
        raise HTTPException(status_code=409, detail="Circular reference")
    return _cell_view(req.row, req.col)

@app.post("/grid/fill", response_model=FillResult)
async def fill_cells(req: FillRequest):
    """Copy the source cell across the dragged rectangle (relative refs shift)."""
    _check_cell(req.source.row, req.source.col)
    _check_cell(req.target.row, req.target.col)
    source = CellKey(req.source.row, req.source.col)
    try:
        updated = engine.fill_commit(source, CellKey(req.target.row, req.target.col))
    except RecursionError:
        raise HTTPException(status_code=409, detail="Circular reference")
    return FillResult(
        updated=[key_to_ref(k) for k in updated],
        formula=is_formula(engine.raw_value(source.row, source.col)),
    )

@app.post("/grid/refresh")
async def refresh_pending():
    return {"refreshed": engine.run_pending()}

@app.get("/grid/events")
async def grid_events(request: Request):
    """SSE stream of cells re-read by deferred fill refreshes."""
    async def event_generator():
        queue: asyncio.Queue = asyncio.Queue()
        _subscribers.add(queue)
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=EVENT_PING_SECONDS)
                except asyncio.TimeoutError:
                    continue
                yield {"data": json.dumps(event)}
        finally:
            _subscribers.discard(queue)

    return EventSourceResponse(event_generator())


if __name__ == "__main__":
    import uvicorn
    host = os.getenv("GRID_HOST", "127.0.0.1")
    port = int(os.getenv("GRID_PORT", "8000"))
    print(f"[STARTUP] Serving grid on {host}:{port}")
    uvicorn.run(app, host=host, port=port, timeout_keep_alive=5, loop="asyncio")
