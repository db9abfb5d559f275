"""
Station table export (CSV and Excel).

Columns are given as ``(header, field)`` pairs; ``field`` may be a dotted path
into the nested data maps (``public_data.Batt``). Missing values export as
empty cells.
"""

import csv
import io
import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

logger = logging.getLogger("export")

Column = Tuple[str, str]

HEADER_FILL = PatternFill(start_color="FFE0E0E0", end_color="FFE0E0E0", fill_type="solid")
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def resolve_field(row: Dict[str, Any], field: str) -> Any:
    value: Any = row
    # Data keys may themselves contain dots; only the first one separates the category
    for part in field.split(".", 1):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join("" if v is None else str(v) for v in value)
    if isinstance(value, dict):
        return str(value)
    return value


def export_matrix(rows: Iterable[Dict[str, Any]], columns: Sequence[Column]) -> List[List[Any]]:
    """Header row followed by one list of cell values per data row."""
    matrix: List[List[Any]] = [[header for header, _ in columns]]
    for row in rows:
        matrix.append([_cell(resolve_field(row, field)) for _, field in columns])
    return matrix


def column_width(header: str) -> float:
    return min(max(len(header), 15) * 1.2, 50)


def export_filename(extension: str, today: Optional[date] = None) -> str:
    return f"station_data_{(today or date.today()).isoformat()}.{extension}"


def export_rows_csv(rows: Iterable[Dict[str, Any]], columns: Sequence[Column]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    matrix = export_matrix(rows, columns)
    writer.writerows(matrix)
    logger.info("Exported %d row(s) x %d column(s) to CSV", len(matrix) - 1, len(columns))
    return output.getvalue()


def export_rows_xlsx(rows: Iterable[Dict[str, Any]], columns: Sequence[Column]) -> bytes:
    """Single-sheet workbook with a bold grey header row."""
    matrix = export_matrix(rows, columns)

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Station Data"
    for values in matrix:
        sheet.append(values)

    bold = Font(bold=True)
    for index, (header, _) in enumerate(columns, start=1):
        cell = sheet.cell(row=1, column=index)
        cell.font = bold
        cell.fill = HEADER_FILL
        sheet.column_dimensions[get_column_letter(index)].width = column_width(header)

    buffer = io.BytesIO()
    workbook.save(buffer)
    logger.info("Exported %d row(s) x %d column(s) to XLSX", len(matrix) - 1, len(columns))
    return buffer.getvalue()
