import logging

import pandas as pd
import streamlit as st

from config import load_config
from errors import DeliveryFailed, DrainInProgress, PersistenceFailed, ValidationFailed
from ingest.csv_parser import group_orders, parse_lab_orders
from pipeline import LabOrderPipeline, build_components

logger = logging.getLogger(__name__)


st.set_page_config(page_title="labsync operator console", layout="wide")


@st.cache_resource
def get_components():
    return build_components(load_config())


try:
    client, queue = get_components()
except (ValueError, PersistenceFailed) as e:
    st.error(f"Initialization failed: {e}")
    st.stop()

pipeline = LabOrderPipeline(client, queue)

st.title("🧪 Lab-Test Sync Console")
st.markdown("Pending and abandoned lab-test batches waiting for the hospital service.")
st.markdown("---")

# Sidebar: server status and manual drain
st.sidebar.header("🔌 Remote Service")
if client.check_health():
    st.sidebar.success(f"Reachable: {client.base_url}")
else:
    st.sidebar.warning(f"Unreachable: {client.base_url}")

if st.sidebar.button("Drain pending now"):
    try:
        summary = queue.drain_pending()
        st.sidebar.success(
            f"{summary.synced} synced, {summary.still_pending} still pending, {summary.abandoned} abandoned"
        )
    except DrainInProgress:
        st.sidebar.info("A drain is already running")
    except PersistenceFailed as e:
        st.sidebar.error(f"Local store write failed: {e}")


def entries_frame(entries):
    return pd.DataFrame([e.summary() for e in entries])


st.subheader("⏳ Pending")
pending = queue.list_pending()
if pending:
    st.dataframe(entries_frame(pending))
else:
    st.info("Nothing waiting to sync.")

st.subheader("⚠️ Abandoned (manual follow-up)")
abandoned = queue.list_abandoned()
if abandoned:
    st.dataframe(entries_frame(abandoned))
    key = st.selectbox("Entry", [e.key for e in abandoned])
    if st.button("Requeue selected entry"):
        queue.requeue(key)
        st.success(f"Requeued {key}")
else:
    st.info("No abandoned entries.")

st.markdown("---")

# Bulk orders from a CSV sheet
uploaded_file = st.file_uploader("📂 Upload lab orders (.csv with visit_id, patient_id, test_name)", type=["csv"])
if uploaded_file:
    try:
        content = uploaded_file.read().decode("utf-8")
        rows = parse_lab_orders(content)
        st.dataframe(pd.DataFrame(rows))

        for (visit_id, patient_id), orders in group_orders(rows).items():
            try:
                feedback = pipeline.save_lab_orders(visit_id, patient_id, orders)
            except ValidationFailed as e:
                st.warning(f"Visit {visit_id}, patient {patient_id}: {e}")
                continue
            if feedback["status"] == "saved":
                st.success(f"Visit {visit_id}: {feedback['message']}")
            else:
                st.warning(f"Visit {visit_id}: {feedback['message']}")

    except ValidationFailed as e:
        st.error(f"Invalid order sheet: {e}")
    except (DeliveryFailed, PersistenceFailed) as e:
        st.error(f"Orders could not be saved: {e}")
        logger.error(f"CSV order processing error: {e}", exc_info=True)
