import json
import logging
from datetime import date
from io import StringIO

import pandas as pd
import streamlit as st

from retention.lda import (
    LdaError,
    OpenpyxlSheetPort,
    Settings,
    create_lda_report,
    merge_master_list,
    read_import_file,
    update_grades,
)
from retention.lda.column_mapper import ColumnSpec
from retention.lda.report import STEPS
from retention.lda.settings import DEFAULT_OUTPUT_COLUMNS, MASTER_LIST_SHEET

# Page config
st.set_page_config(
    page_title="LDA Retention Reports",
    page_icon="📋",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.markdown("""
<style>
    :root {
        --primary-color: #1e3a8a;
        --accent-color: #10b981;
        --text-light: #6b7280;
        --border-color: #e5e7eb;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}

    h1 {
        color: var(--primary-color);
        font-weight: 700;
        letter-spacing: -0.02em;
    }

    .subtitle {
        color: var(--text-light);
        font-size: 1.05rem;
        margin-bottom: 1.5rem;
        padding-bottom: 1rem;
        border-bottom: 2px solid var(--border-color);
    }

    .stButton > button {
        background-color: var(--primary-color);
        color: white;
        border-radius: 0.5rem;
        font-weight: 600;
    }

    .stDownloadButton > button {
        background-color: var(--accent-color);
        color: white;
        border-radius: 0.5rem;
        font-weight: 600;
    }

    [data-testid="stFileUploader"] {
        border: 2px dashed var(--border-color);
        border-radius: 0.75rem;
        padding: 1.5rem;
    }
</style>
""", unsafe_allow_html=True)

STEP_LABELS = {
    "validate": "Validating workbook",
    "read": "Reading Master List",
    "filter": "Selecting students by Days Out",
    "failing": "Selecting failing students",
    "createSheet": "Creating report sheet",
    "tags": "Reading Student History tags",
    "format": "Writing and formatting rows",
    "finalize": "Finishing up",
}


def capture_logs() -> tuple[logging.Handler, StringIO]:
    """Route retention log records into a buffer shown under the results."""
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", "%H:%M:%S"))
    logger = logging.getLogger("retention")
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    return handler, buffer


def release_logs(handler: logging.Handler) -> None:
    logging.getLogger("retention").removeHandler(handler)


def progress_callback(bar):
    def report(current, total, phase, label):
        fraction = current / total if total else 1.0
        bar.progress(min(fraction, 1.0), text=f"{label}: {phase} {current}/{total}")
    return report


def build_settings() -> Settings:
    """Sidebar controls, optionally seeded from an uploaded settings JSON."""
    st.markdown("## Settings")
    uploaded = st.file_uploader("Settings file (optional)", type=["json"], key="settings_file")
    base = Settings()
    if uploaded is not None:
        try:
            base = Settings.from_dict(json.load(uploaded))
        except (LdaError, ValueError) as e:
            st.error(f"❌ Settings file rejected: {e}")

    threshold = st.number_input(
        "Days Out threshold",
        min_value=0,
        value=int(base.days_out_threshold),
        help="Students with at least this many days out go on the report"
    )
    naming = st.selectbox(
        "Sheet naming",
        options=["date", "campus"],
        index=["date", "campus"].index(base.sheet_naming_mode),
        help="'campus' prefixes the sheet name with the most common campus"
    )
    include_failing = st.checkbox("Include failing students list", value=base.include_failing_list)
    include_engagement = st.checkbox("Use LDA follow-up tags", value=base.include_engagement_tag)
    include_dnc = st.checkbox("Use Do Not Contact tags", value=base.include_dnc_tag)
    empty_as_zero = st.checkbox("Treat empty grades as zero", value=base.treat_empty_grades_as_zero)

    default_columns = ", ".join(c.name for c in base.output_columns) or ", ".join(DEFAULT_OUTPUT_COLUMNS)
    columns_text = st.text_area(
        "Report columns",
        value=default_columns,
        help="Comma separated, in report order. Other Master List columns are carried hidden."
    )

    declared = {c.name.lower(): c for c in base.output_columns}
    columns = []
    for name in (n.strip() for n in columns_text.split(",")):
        if name:
            columns.append(declared.get(name.lower(), ColumnSpec(name=name)))

    return Settings(
        days_out_threshold=threshold,
        include_failing_list=include_failing,
        include_engagement_tag=include_engagement,
        include_dnc_tag=include_dnc,
        sheet_naming_mode=naming,
        output_columns=columns,
        treat_empty_grades_as_zero=empty_as_zero,
        gradebook_url_template=base.gradebook_url_template,
        excluded_course_marker=base.excluded_course_marker,
    )


def run_operation(label, operation):
    """Run one workbook operation; on success keep the modified workbook for download."""
    handler, log_buffer = capture_logs()
    bar = st.progress(0.0, text=label)
    try:
        port = OpenpyxlSheetPort.from_bytes(st.session_state["workbook_bytes"])
        with st.spinner(f"{label}..."):
            outcome = operation(port, progress_callback(bar))
        st.session_state["workbook_bytes"] = port.to_bytes()
        return outcome
    except LdaError as e:
        st.error(f"❌ {e.reason}")
        if e.fix_steps:
            st.markdown("\n".join(f"{i}. {step}" for i, step in enumerate(e.fix_steps, 1)))
        with st.expander("See error details"):
            st.exception(e)
    except Exception as e:
        st.error(f"❌ Unexpected error: {str(e)}")
        with st.expander("See error details"):
            st.exception(e)
    finally:
        release_logs(handler)
        bar.empty()
        st.session_state["last_log"] = log_buffer.getvalue()
    return None


def import_uploader(key: str, help_text: str):
    uploaded = st.file_uploader("Import file", type=["csv", "xlsx"], key=key, help=help_text)
    if uploaded is None:
        return None
    try:
        table = read_import_file(uploaded, file_name=uploaded.name)
    except LdaError as e:
        st.error(f"❌ {e.reason}")
        return None
    with st.expander("📋 Preview Data (first 10 rows)", expanded=False):
        st.dataframe(table.to_frame().head(10), use_container_width=True)
    return table


# Header
st.markdown("# 📋 LDA Retention Reports")
st.markdown(
    '<div class="subtitle">Master List roster imports, grade updates and dated LDA outreach sheets</div>',
    unsafe_allow_html=True
)

with st.sidebar:
    settings = build_settings()
    st.markdown("---")
    st.markdown("""
    **Workbook needs:**
    - a **Master List** sheet with Student Name and Days Out
    - optionally a **Student History** sheet with Student Number and Tag
    """)

st.markdown("## Upload Your Workbook")
workbook_file = st.file_uploader(
    "Choose a workbook",
    type=["xlsx", "xlsm"],
    help="The retention workbook containing the Master List",
    label_visibility="collapsed"
)

if workbook_file is None:
    st.info("👆 Upload your retention workbook to get started")
    st.stop()

if st.session_state.get("workbook_name") != workbook_file.name:
    st.session_state["workbook_name"] = workbook_file.name
    st.session_state["workbook_bytes"] = workbook_file.getvalue()
    st.session_state.pop("last_log", None)

try:
    sheets = OpenpyxlSheetPort.from_bytes(st.session_state["workbook_bytes"]).sheet_names()
except Exception as e:
    st.error(f"❌ Workbook could not be opened: {str(e)}")
    with st.expander("See error details"):
        st.exception(e)
    st.stop()

st.success(f"✅ Loaded **{workbook_file.name}** ({len(sheets)} sheets)")
if MASTER_LIST_SHEET not in sheets:
    st.warning(f"⚠️ No '{MASTER_LIST_SHEET}' sheet. Add one with a header row before importing.")

tab_report, tab_roster, tab_grades = st.tabs(["📄 LDA Report", "👥 Import Roster", "📝 Update Grades"])

with tab_report:
    st.markdown("### Create LDA report")
    st.markdown(
        f"Students with **{settings.days_out_threshold}+** days out, highest first, "
        f"written to a new sheet named for {date.today():%m-%d-%Y}."
    )
    if st.button("🚀 Create LDA Report", type="primary", use_container_width=True):
        step_box = st.empty()

        def on_step(step_id, status):
            if status == "active":
                position = STEPS.index(step_id) + 1
                step_box.info(f"Step {position}/{len(STEPS)}: {STEP_LABELS.get(step_id, step_id)}")

        result = run_operation(
            "Creating LDA report",
            lambda port, progress: create_lda_report(port, settings, on_step=on_step, on_progress=progress),
        )
        step_box.empty()
        if result is not None:
            st.success(f"✅ **Created '{result.sheet_name}'**")
            col1, col2, col3 = st.columns(3)
            with col1:
                st.metric("LDA Students", f"{result.primary_count:,}")
            with col2:
                st.metric("Failing Students", f"{result.failing_count:,}")
            with col3:
                st.metric("Hidden Columns", len(result.hidden_columns))
            if result.date_columns:
                st.caption(f"Date formatted: {', '.join(result.date_columns)}")

with tab_roster:
    st.markdown("### Import roster into Master List")
    st.markdown(
        "New students are added at the top in light blue. Gradebook links, assigned "
        "advisors and static columns of returning students are kept."
    )
    roster = import_uploader("roster_file", "Roster export with a Student Name column")
    if roster is not None and st.button("📥 Import Roster", use_container_width=True):
        summary = run_operation(
            "Importing roster",
            lambda port, progress: merge_master_list(port, roster, settings, on_progress=progress),
        )
        if summary is not None:
            st.success("✅ **Master List updated**")
            col1, col2, col3 = st.columns(3)
            with col1:
                st.metric("New Students", summary.new_count)
            with col2:
                st.metric("Returning Students", summary.existing_count)
            with col3:
                st.metric("Links Kept", summary.links_preserved)
            if summary.unmapped_columns:
                st.caption(f"Not imported (no Master List column): {', '.join(summary.unmapped_columns)}")

with tab_grades:
    st.markdown("### Update grades")
    st.markdown(
        f"Courses containing **{settings.excluded_course_marker}** are skipped. "
        "Gradebook links are rebuilt when Course ID and Student ID are present."
    )
    grades = import_uploader("grades_file", "Grade export with Student Name, Course and Current Score")
    if grades is not None and st.button("📝 Update Grades", use_container_width=True):
        summary = run_operation(
            "Updating grades",
            lambda port, progress: update_grades(port, grades, settings, on_progress=progress),
        )
        if summary is not None:
            st.success(f"✅ **{summary.students_updated} students updated**")
            st.dataframe(pd.DataFrame([{
                "Grades": summary.grades_updated,
                "Missing Assignments": summary.missing_updated,
                "Zero Assignments": summary.zeros_updated,
                "Gradebook Links": summary.links_updated,
                "Skipped Rows": summary.skipped_rows,
            }]), use_container_width=True, hide_index=True)

if st.session_state.get("last_log"):
    with st.expander("Run log"):
        st.text(st.session_state["last_log"])

st.markdown("<br>", unsafe_allow_html=True)
st.download_button(
    label="📥 Download Workbook",
    data=st.session_state["workbook_bytes"],
    file_name=workbook_file.name,
    mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    use_container_width=True
)
