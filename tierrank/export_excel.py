# tierrank/export_excel.py — Excel export of rankings + update report
import os
from dataclasses import asdict

import pandas as pd
from openpyxl.formatting.rule import ColorScaleRule
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from tierrank.config import CFG, FRIENDLY_NAMES, RATING_FIELDS
from tierrank.distribution import RANK_COLORS, rank_distribution
from tierrank.summary import updates_frame

EXPORT_COLS = [
    "productId", "productName", "ingredient", "category", "price",
    "costPerUnit", "dailyAmount", "evidenceScore", "safetyScore",
    *RATING_FIELDS,
]


def rankings_frame(ranked) -> pd.DataFrame:
    rows = []
    for r in ranked:
        m = r.metrics
        rows.append({
            "productId":     m.product_id,
            "productName":   m.product_name,
            "ingredient":    m.ingredient,
            "category":      m.category,
            "price":         m.price,
            "costPerUnit":   round(m.cost_per_unit, 4),
            "dailyAmount":   round(m.daily_amount, 2),
            "evidenceScore": r.scores.evidence,
            "safetyScore":   r.scores.safety,
            **r.tier_ratings.to_dict(),
        })
    return pd.DataFrame(rows, columns=EXPORT_COLS)


def style_and_export(result, filepath: str = None) -> str:
    filepath = filepath or CFG["output_excel"]
    os.makedirs(os.path.dirname(filepath) or ".", exist_ok=True)

    all_df = rankings_frame(result.ranked).rename(columns=FRIENDLY_NAMES)
    upd_df = updates_frame(result.updates).rename(columns=FRIENDLY_NAMES)
    skip_df = pd.DataFrame([asdict(s) for s in result.skipped],
                           columns=["product_id", "product_name", "reason"])

    with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
        all_df.to_excel(writer, sheet_name="Rankings", index=False)
        upd_df.to_excel(writer, sheet_name="Updates", index=False)
        rank_distribution(result.ranked).rename(columns=FRIENDLY_NAMES).to_excel(
            writer, sheet_name="Distribution")
        skip_df.to_excel(writer, sheet_name="Skipped", index=False)
        wb = writer.book
        for sn in ["Rankings", "Updates"]:
            _format_sheet(wb[sn])

    print(f"✅  Excel → {filepath}")
    return filepath


def _format_sheet(ws):
    HEADER_FILL  = PatternFill("solid", fgColor="1F4E79")
    OVERALL_FILL = PatternFill("solid", fgColor="154360")
    ALT_FILL     = PatternFill("solid", fgColor="EBF3FB")
    BORDER = Border(bottom=Side(style="thin", color="BFBFBF"),
                    right=Side(style="thin",  color="BFBFBF"))
    rank_labels = {FRIENDLY_NAMES[f] for f in RATING_FIELDS}

    rank_cols, score_cols = [], []
    for idx, cell in enumerate(ws[1], 1):
        val = str(cell.value or "")
        cell.font      = Font(bold=True, color="FFFFFF", size=10)
        cell.alignment = Alignment(horizontal="center", wrap_text=True)
        cell.border    = BORDER
        cell.fill      = OVERALL_FILL if val == FRIENDLY_NAMES["overallRank"] else HEADER_FILL
        if val in rank_labels: rank_cols.append(idx)
        if "Score" in val:     score_cols.append(idx)

    for ri, row in enumerate(ws.iter_rows(min_row=2), 2):
        for cell in row:
            cell.border = BORDER
            cell.alignment = Alignment(horizontal="center")
            if cell.column in rank_cols and cell.value in RANK_COLORS:
                cell.fill = PatternFill("solid", fgColor=RANK_COLORS[cell.value].lstrip("#"))
                cell.font = Font(bold=True)
            elif ri % 2 == 0:
                cell.fill = ALT_FILL

    for col in ws.columns:
        ml = max((len(str(c.value)) if c.value else 0) for c in col)
        ws.column_dimensions[get_column_letter(col[0].column)].width = min(ml + 2, 40)

    for ci in score_cols:
        cl = get_column_letter(ci)
        ws.conditional_formatting.add(
            f"{cl}2:{cl}{max(ws.max_row, 2)}",
            ColorScaleRule(start_type="min",       start_color="FF4444",
                           mid_type="percentile",  mid_value=50, mid_color="FFFF00",
                           end_type="max",         end_color="00B050"),
        )
    ws.freeze_panes = "C2"
