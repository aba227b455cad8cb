import os
import streamlit as st
import pandas as pd
from io import BytesIO
from pathlib import Path

from tally.tracking.alerts import alert_counts, refresh_merge_fields, scan_and_send
from tally.tracking.diagnostics import attach_debug_log, detach_debug_log
from tally.tracking.edit_guard import (
    EditEvent,
    clear_attribution,
    confirm_attribution,
    handle_edit,
    saved_attribution,
)
from tally.tracking.errors import TrackerFault
from tally.tracking.event_ledger import reconcile
from tally.tracking.notify import DryRunSender, SmtpSender
from tally.tracking.roster_sync import reset_sync_status, sync_all_teams, sync_next_team, team_names
from tally.tracking.runner import open_context
from tally.tracking.schema import DEBUG_VIEW, FIRST_DATA_ROW, HEADER_ROWS, LEDGER_VIEW, SUBJECT_ID_FIELD, cell_text
from tally.tracking.week_blocks import ViewSchema, resolve_active_block
from tally.tracking.week_locks import refresh_week_locks
from tally.tracking.workbook import Workbook

# Page config
st.set_page_config(
    page_title="Weekly Behavior Tracker",
    page_icon="📋",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.markdown("""
<style>
    :root {
        --primary-color: #1e3a8a;
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
        font-size: 1.1rem;
        font-weight: 500;
        margin-bottom: 2rem;
        padding-bottom: 1.5rem;
        border-bottom: 2px solid var(--border-color);
    }
</style>
""", unsafe_allow_html=True)


# Sync dates and confirmed emails persist here, one properties file per workbook name.
STATE_DIR = Path(os.getenv("TALLY_STATE_DIR", ".tally"))


def get_context():
    """Context for the uploaded workbook; its properties are reloaded from disk on every rerun."""
    STATE_DIR.mkdir(parents=True, exist_ok=True)
    return open_context(st.session_state.workbook, STATE_DIR / st.session_state.workbook_name)


def run_action(label, action, ctx):
    """Run one engine operation with the DebugLog attached; surface hard faults."""
    handler = attach_debug_log(ctx)
    try:
        with st.spinner(f"{label}..."):
            return action(ctx)
    except TrackerFault as e:
        st.error(f"❌ {e.reason}")
        with st.expander("See fix steps"):
            st.code(str(e))
    finally:
        detach_debug_log(handler)


def workbook_bytes(ctx):
    # Protections are not read back from xlsx; reapply them before writing.
    refresh_week_locks(ctx)
    buffer = BytesIO()
    ctx.workbook.to_xlsx(buffer)
    buffer.seek(0)
    return buffer


# Header
st.markdown("# 📋 Weekly Behavior Tracker")
st.markdown('<div class="subtitle">Team rosters | Weekly infraction entry | 5th infraction alerts</div>', unsafe_allow_html=True)

uploaded_file = st.file_uploader(
    "Tracker workbook",
    type=['xlsx'],
    help="Upload the tracker workbook (.xlsx)",
    label_visibility="collapsed"
)

if uploaded_file is None:
    st.info("👆 Upload the tracker workbook to get started")
    st.stop()

if st.session_state.get("workbook_name") != uploaded_file.name:
    try:
        st.session_state.workbook = Workbook.from_xlsx(uploaded_file)
        st.session_state.workbook_name = uploaded_file.name
        refresh_week_locks(get_context())
    except Exception as e:
        st.error(f"❌ Error loading workbook: {str(e)}")
        with st.expander("See error details"):
            st.exception(e)
        st.stop()

ctx = get_context()

# Sidebar
with st.sidebar:
    st.markdown("## Your Email")
    current = saved_attribution(ctx)
    if current:
        st.success(f"Entries are attributed to **{current}**")
        if st.button("Clear My Email"):
            clear_attribution(ctx)
            st.rerun()
    else:
        st.warning("Confirm your email before recording infractions.")
    email = st.text_input("Email", value=current or "")
    if st.button("Confirm My Email…"):
        try:
            confirm_attribution(ctx, email)
            st.rerun()
        except ValueError:
            st.error("Please enter a valid email address.")

    st.markdown("---")
    st.markdown("## Batch Actions")
    if st.button("Sync Next Team", use_container_width=True):
        report = run_action("Syncing next team", sync_next_team, ctx)
        st.write("All teams have been synced for today." if report is None else f"{report.team}: {report.status}")
    if st.button("Sync All Teams", use_container_width=True):
        reports = run_action("Syncing all teams", sync_all_teams, ctx) or []
        st.dataframe(pd.DataFrame([vars(r) for r in reports]), use_container_width=True)
    if st.button("Reset Sync Status", use_container_width=True):
        run_action("Resetting", reset_sync_status, ctx)
    if st.button("Process New Events", use_container_width=True):
        result = run_action("Reconciling ledger", reconcile, ctx)
        if result:
            st.write(f"{result.new_events} new events, {result.updated_values} updated")
    dry_run = st.checkbox("Dry run alerts", value=True)
    if st.button("Scan & Send Alerts", use_container_width=True):
        ctx.sender = DryRunSender() if dry_run else SmtpSender.from_env()
        result = run_action("Scanning alerts", scan_and_send, ctx)
        if result:
            st.write(f"Scan complete. {result.sent} new alerts sent.")
    if st.button("Refresh Week Locks", use_container_width=True):
        run_action("Refreshing locks", refresh_week_locks, ctx)
    if st.button("Refresh Merge Fields", use_container_width=True):
        names = run_action("Updating merge fields", lambda c: refresh_merge_fields(c.workbook), ctx)
        st.write(", ".join(names) if names else "Templates tab not found.")

# Infraction entry
st.markdown("## Record an Infraction")
teams = [t for t in team_names(ctx.workbook) if t in ctx.workbook]
if not teams:
    st.info("No team tabs yet. Run **Sync Next Team** or **Sync All Teams** first.")
else:
    col1, col2, col3 = st.columns(3)
    with col1:
        team = st.selectbox("Team", options=teams)
    sheet = ctx.workbook.get(team)
    header = sheet.header_rows(HEADER_ROWS)
    schema = ViewSchema.from_header(header, ctx.config)
    try:
        active = resolve_active_block(header, sheet.name, ctx.config)
    except TrackerFault as e:
        st.error(f"❌ {e.reason}")
        active = None

    id_col = schema.field_index.get(SUBJECT_ID_FIELD)
    students = {}
    if id_col is not None:
        for row in range(FIRST_DATA_ROW, sheet.last_row + 1):
            subject = cell_text(sheet.get_value(row, id_col))
            if subject:
                name = f"{cell_text(sheet.get_value(row, schema.field_index.get('Last Name', id_col)))}, " \
                       f"{cell_text(sheet.get_value(row, schema.field_index.get('First Name', id_col)))}"
                students[f"{name} ({subject})"] = row

    if active is None:
        st.warning("This team has no active week. Entries are locked.")
    elif students:
        with col2:
            student = st.selectbox("Student", options=list(students))
        with col3:
            rank = st.selectbox("Infraction", options=list(ctx.config.rank_sequence))
        value = st.text_input("Value", value="X")
        st.caption(f"Active week: **{active.week}**")
        if st.button("Record", type="primary"):
            row = students[student]
            col = active.start_column + ctx.config.rank_index(rank)
            previous = sheet.get_value(row, col) or None
            sheet.set_value(row, col, value)
            outcome = run_action(
                "Recording",
                lambda c: handle_edit(c, EditEvent(sheet.name, row, col, value, previous)),
                ctx,
            )
            if outcome and outcome.accepted:
                st.success(f"✅ Recorded. {outcome.message}")
            elif outcome and outcome.message:
                st.error(f"❌ {outcome.message}")

# Ledger and diagnostics
st.markdown("## Event Ledger")
tab1, tab2, tab3 = st.tabs(["📒 EventLog", "🔢 Totals", "🪵 DebugLog"])
ledger = ctx.workbook.get(LEDGER_VIEW)
events = ledger.frame() if ledger else pd.DataFrame()
with tab1:
    st.dataframe(events, use_container_width=True)
with tab2:
    st.dataframe(alert_counts(events), use_container_width=True)
with tab3:
    debug = ctx.workbook.get(DEBUG_VIEW)
    st.dataframe(debug.frame() if debug else pd.DataFrame(), use_container_width=True)

st.download_button(
    label="📥 Download Updated Workbook",
    data=workbook_bytes(ctx),
    file_name=uploaded_file.name,
    mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    use_container_width=True
)
