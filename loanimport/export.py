from __future__ import annotations
import pandas as pd
from io import BytesIO
from typing import Optional
from .contract import COLUMN_FIELDS, StagedWorkbook
from .report import PHASES, CommitReport


def summary_frame(report: CommitReport) -> pd.DataFrame:
    rows = [report.by_phase[p].to_dict() for p in PHASES if p in report.by_phase]
    return pd.DataFrame(rows, columns=["phase", "total", "done", "ok", "warn", "error"])


def messages_frame(report: CommitReport) -> pd.DataFrame:
    return pd.DataFrame(report.messages(), columns=["phase", "level", "message"])


def staged_credits_frame(staged: StagedWorkbook) -> pd.DataFrame:
    cols = ["sheet", "row", "subject", *COLUMN_FIELDS, "payments", "paid_total"]
    out = []
    for s in staged.sheets:
        for r in s.rows:
            d = {"sheet": s.sheet_name, "row": r.origin_row, "subject": r.subject.value}
            d.update({f: getattr(r, f) for f in COLUMN_FIELDS})
            d["payments"] = len(r.payments)
            d["paid_total"] = round(sum(p.amount for p in r.payments), 2)
            out.append(d)
    return pd.DataFrame(out, columns=cols)


def staged_payments_frame(staged: StagedWorkbook) -> pd.DataFrame:
    out = [
        {"sheet": s.sheet_name, "row": r.origin_row, "folio": r.folio, "client_name": r.client_name,
         "date": p.date, "amount": p.amount}
        for s in staged.sheets for r in s.rows for p in r.payments
    ]
    return pd.DataFrame(out, columns=["sheet", "row", "folio", "client_name", "date", "amount"])


def export_report_to_excel_bytes(report: CommitReport, staged: Optional[StagedWorkbook] = None) -> bytes:
    bio = BytesIO()

    summary_df = summary_frame(report)
    messages_df = messages_frame(report)
    credits_df = staged_credits_frame(staged) if staged is not None else None
    payments_df = staged_payments_frame(staged) if staged is not None else None

    with pd.ExcelWriter(bio, engine="xlsxwriter") as writer:
        summary_df.to_excel(writer, index=False, sheet_name="Summary", startrow=2)
        messages_df.to_excel(writer, index=False, sheet_name="Messages")
        if credits_df is not None:
            credits_df.to_excel(writer, index=False, sheet_name="Credits")
        if payments_df is not None:
            payments_df.to_excel(writer, index=False, sheet_name="Payments")

        wb = writer.book

        fmt_header = wb.add_format({"bold": True, "bg_color": "#F2F2F2", "border": 1, "valign": "vcenter"})
        fmt_ok = wb.add_format({"bold": True, "border": 1, "bg_color": "#E6F4EA"})
        fmt_lvl_err = wb.add_format({"border": 1, "valign": "top", "bg_color": "#FCE8E6"})
        fmt_lvl_warn = wb.add_format({"border": 1, "valign": "top", "bg_color": "#FEF7E0"})

        def format_df_sheet(sheet_name: str, df: pd.DataFrame, header_row: int = 0, default_width: int = 14, max_width: int = 60):
            ws = writer.sheets.get(sheet_name)
            if ws is None:
                return
            ws.freeze_panes(header_row + 1, 0)
            ws.autofilter(header_row, 0, header_row + max(1, len(df)), max(0, len(df.columns) - 1))
            for col, name in enumerate(df.columns):
                ws.write(header_row, col, name, fmt_header)
                w = max(10, min(max_width, int(len(str(name)) * 1.2) + 4))
                ws.set_column(col, col, max(default_width, w))

        ws = writer.sheets["Summary"]
        ws.merge_range(0, 0, 0, len(summary_df.columns) - 1,
                       f"GLOBAL_OK: {'YES' if report.global_ok else 'NO'}",
                       fmt_ok if report.global_ok else fmt_lvl_err)
        format_df_sheet("Summary", summary_df, header_row=2)
        if len(summary_df):
            ws.conditional_format(3, 5, 2 + len(summary_df), 5, {
                "type": "cell", "criteria": ">", "value": 0, "format": fmt_lvl_err,
            })
            ws.conditional_format(3, 4, 2 + len(summary_df), 4, {
                "type": "cell", "criteria": ">", "value": 0, "format": fmt_lvl_warn,
            })

        format_df_sheet("Messages", messages_df)
        wsm = writer.sheets["Messages"]
        wsm.set_column(2, 2, 100)
        if len(messages_df):
            last_row = len(messages_df)
            wsm.conditional_format(1, 1, last_row, 1, {
                "type": "text",
                "criteria": "containing",
                "value": "error",
                "format": fmt_lvl_err,
            })
            wsm.conditional_format(1, 1, last_row, 1, {
                "type": "text",
                "criteria": "containing",
                "value": "warn",
                "format": fmt_lvl_warn,
            })

        if credits_df is not None:
            format_df_sheet("Credits", credits_df, default_width=12, max_width=40)
        if payments_df is not None:
            format_df_sheet("Payments", payments_df, default_width=12, max_width=40)

    return bio.getvalue()
