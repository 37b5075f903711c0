# services/api/core/summary_excel.py
"""
Batch summary workbook attached to a combined forward-to-client email.
One row per candidate: name, project, role, what was sent and the files.
"""
from __future__ import annotations

from io import BytesIO
from typing import Any, Dict, List, Sequence

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

SUMMARY_FILE_NAME = "Candidate_Summary.xlsx"

HEADERS = ["#", "Candidate", "Project", "Role", "Send Type", "Files", "Notes"]
WIDTHS = [6, 28, 28, 24, 14, 60, 40]


def build_summary_xlsx(rows: Sequence[Dict[str, Any]], *, title: str = "Candidates") -> bytes:
    """
    rows: dicts with candidate_name, project_title, role_label, send_type,
    file_names (list) and notes. Returns the .xlsx bytes.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = title[:31] or "Candidates"

    thin = Side(style="thin", color="999999")
    border = Border(left=thin, right=thin, top=thin, bottom=thin)
    header_fill = PatternFill("solid", fgColor="D9E1F2")

    ws.append(HEADERS)
    for col_idx, width in enumerate(WIDTHS, start=1):
        cell = ws.cell(row=1, column=col_idx)
        cell.font = Font(bold=True)
        cell.fill = header_fill
        cell.border = border
        cell.alignment = Alignment(horizontal="center", vertical="center")
        ws.column_dimensions[get_column_letter(col_idx)].width = width

    for i, row in enumerate(rows, start=1):
        files: List[str] = list(row.get("file_names") or [])
        ws.append([
            i,
            row.get("candidate_name") or "",
            row.get("project_title") or "",
            row.get("role_label") or "",
            row.get("send_type") or "",
            "\n".join(files),
            row.get("notes") or "",
        ])
        for col_idx in range(1, len(HEADERS) + 1):
            cell = ws.cell(row=i + 1, column=col_idx)
            cell.border = border
            cell.alignment = Alignment(vertical="top", wrap_text=True)

    ws.freeze_panes = "A2"

    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()
