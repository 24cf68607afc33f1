from __future__ import annotations
import asyncio
import hashlib
import logging
import streamlit as st
import pandas as pd
from loanimport.ingest import list_sheet_names, load_workbook_from_bytes
from loanimport.extract import build_staging
from loanimport.header_detect import patch_header
from loanimport.validate import validate_workbook, issues_frame, has_errors
from loanimport.store import SqliteStore
from loanimport.entity import ImportContext
from loanimport.commit import commit_workbook, commit_phase, phase_totals, format_phase_status
from loanimport.report import PHASES, CommitReport, Phase
from loanimport.export import export_report_to_excel_bytes, staged_credits_frame
from loanimport.session import save_session, load_session, clear_session, has_session
from loanimport.contract import WorkbookError
from loanimport.utils import database_path

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

st.set_page_config(page_title="Loan portfolio import", layout="wide")
st.title("Loan portfolio import")
# =========================

# Helpers
# =========================
HEADER_FIELDS = [
    ("population_number", "Population no."),
    ("population_name", "Population"),
    ("municipality", "Municipality"),
    ("state", "State"),
    ("route_name", "Route"),
    ("frequency", "Payment frequency"),
    ("coordinator_name", "Coordinator"),
    ("coordinator_phone", "Coordinator phone"),
    ("coordinator_address", "Coordinator address"),
    ("birth_day", "Birthday (day)"),
    ("birth_month", "Birthday (month)"),
]


def _safe_key_prefix(src_key: str) -> str:
    return hashlib.md5(src_key.encode("utf-8")).hexdigest()


def _context() -> ImportContext:
    # one context per import session: memoized ids and the credit map survive reruns
    if st.session_state.get("ctx") is None:
        st.session_state["ctx"] = ImportContext(store=SqliteStore(database_path()))
    return st.session_state["ctx"]


def _reset_import() -> None:
    for k in ("staged", "report", "ctx", "log_text"):
        st.session_state[k] = None


for k in ("staged", "report", "ctx", "log_text", "upload_id"):
    st.session_state.setdefault(k, None)

# =========================

# 1) Upload and sheet selection
# =========================
upload = st.file_uploader("Workbook (.xlsx)", type=["xlsx"])

if upload is None:
    if has_session():
        if st.button("Resume last import session"):
            st.session_state["staged"] = load_session()
            st.rerun()
    if st.session_state["staged"] is None:
        st.warning("Upload a workbook.")
        st.stop()
else:
    data = upload.getvalue()
    upload_id = hashlib.md5(data).hexdigest()
    if st.session_state["upload_id"] != upload_id:
        _reset_import()
        st.session_state["upload_id"] = upload_id

    if st.session_state["staged"] is None:
        try:
            names = list_sheet_names(data)
        except WorkbookError as e:
            st.error(str(e))
            st.stop()
        chosen = st.multiselect("Sheets to import", names, default=names)
        if st.button("Read sheets", type="primary"):
            bar = st.progress(0, text="Reading...")
            try:
                raw = load_workbook_from_bytes(data, upload.name, sheet_names=chosen)
                staged = build_staging(raw, on_progress=lambda p, label: bar.progress(p, text=label))
            except WorkbookError as e:
                st.error(str(e))
                st.stop()
            st.session_state["staged"] = staged
            save_session(staged)
            st.rerun()
        st.stop()

staged = st.session_state["staged"]
st.info(f"{staged.file_name}: {len(staged.sheets)} sheet(s)")
if st.button("Discard this import session"):
    clear_session(staged.file_name)
    _reset_import()
    st.rerun()

# =========================

# 2) Header review
# =========================
st.subheader("Sheet headers")
for sheet in staged.sheets:
    kp = _safe_key_prefix(sheet.sheet_name)
    with st.expander(f"{sheet.sheet_name}: {len(sheet.rows)} row(s)", expanded=False):
        h = sheet.header.to_dict()
        hdf = pd.DataFrame([{"field": label, "value": "" if h[f] is None else str(h[f])} for f, label in HEADER_FIELDS])
        edited = st.data_editor(hdf, hide_index=True, disabled=["field"], key=f"{kp}__hdr", width="stretch")
        if st.button("Apply header changes", key=f"{kp}__apply"):
            patch = {f: (v if str(v).strip() else None) for (f, _), v in zip(HEADER_FIELDS, edited["value"].tolist())}
            sheet.header = patch_header(sheet.header, patch)
            if st.session_state["ctx"] is not None:
                st.session_state["ctx"].forget_sheet(sheet.sheet_name)
            save_session(staged)
            st.success("Header updated.")
            st.rerun()
        st.caption(f"Birthdate: {sheet.header.coordinator_birthdate or '-'} | coordinator sheet: {sheet.header.is_coordinator_sheet}")

with st.expander("Staged credits", expanded=False):
    st.dataframe(staged_credits_frame(staged), width="stretch")

issues = validate_workbook(staged)
if issues:
    (st.error if has_errors(issues) else st.warning)(f"Validation: {len(issues)} issue(s)")
    st.dataframe(issues_frame(issues), width="stretch")

# =========================

# 3) Commit
# =========================
st.subheader("Register")
totals = phase_totals(staged)
st.write(" | ".join(f"{p.value}: {totals[p]}" for p in PHASES))

if st.button("Register everything", type="primary"):
    bar = st.progress(0, text="Starting...")
    status = st.empty()

    def on_progress(pct: int, label: str, rep: CommitReport) -> None:
        bar.progress(pct, text=label)
        status.text("\n".join(format_phase_status(rep.step(p)) for p in PHASES))

    report = asyncio.run(commit_workbook(_context(), staged, on_progress=on_progress))
    st.session_state["report"] = report
    st.session_state["log_text"] = report.render_text()

c1, c2 = st.columns(2)
with c1:
    phase_sel = st.selectbox("Rerun one phase", [p.value for p in PHASES])
with c2:
    st.write("")
    if st.button("Run phase"):
        bar = st.progress(0, text=phase_sel)
        result = asyncio.run(commit_phase(
            _context(), staged, Phase(phase_sel),
            report=st.session_state["report"],
            on_tick=lambda d, t: bar.progress(int(d * 100 / t) if t else 100, text=f"{phase_sel} {d}/{t}"),
        ))
        if st.session_state["report"] is None:
            rep = CommitReport.with_totals({})
            rep.replace_phase(result)
            st.session_state["report"] = rep
        st.session_state["log_text"] = st.session_state["report"].render_text()

# =========================

# 4) Result
# =========================
report = st.session_state["report"]
if report is not None:
    if report.global_ok:
        st.success("Import finished without errors.")
    else:
        st.error("Import finished with errors.")
    st.dataframe(pd.DataFrame([report.step(p).to_dict() for p in PHASES]), width="stretch")
    st.code(st.session_state["log_text"] or "", language="text")
    st.download_button(
        "Download Excel report",
        data=export_report_to_excel_bytes(report, staged),
        file_name="import_report.xlsx",
        mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )
