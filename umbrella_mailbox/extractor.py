"""Table extraction from HTML message bodies.

Parsing uses BeautifulSoup with the stdlib ``html.parser`` backend,
which is tolerant of unclosed and misnested tags.  Extraction never
raises: unparseable input yields no rows.
"""

from __future__ import annotations

import structlog
from bs4 import BeautifulSoup, Tag

from .models import TableRow

logger = structlog.get_logger()

_CELL_TAGS = ["th", "td"]


def extract_rows(html: str | None) -> list[TableRow]:
    """Return the rows of the first ``<table>`` in *html*, in document order.

    Each ``<tr>`` becomes one :class:`TableRow` (rows without cells are
    kept, with zero cells).  Each ``<th>``/``<td>`` becomes one cell
    holding its trimmed text content.  Rows of tables nested inside the
    first table belong to the nested table and are not included.
    """
    if not html:
        return []
    try:
        soup = BeautifulSoup(html, "html.parser")
        table = soup.find("table")
        if not isinstance(table, Tag):
            return []
        return [_row(tr) for tr in _own_rows(table)]
    except Exception:
        logger.warning("table_extraction_failed", exc_info=True)
        return []


def _own_rows(table: Tag) -> list[Tag]:
    # thead/tbody/tfoot are transparent; a nested <table> is not.
    return [tr for tr in table.find_all("tr") if tr.find_parent("table") is table]


def _row(tr: Tag) -> TableRow:
    cells = [
        cell.get_text().strip()
        for cell in tr.find_all(_CELL_TAGS)
        if cell.find_parent("tr") is tr
    ]
    return TableRow(cells=cells)
