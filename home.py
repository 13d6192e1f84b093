from __future__ import annotations

import streamlit as st

from fishops.config import get_settings
from fishops.db import get_conn, ensure_schema
from fishops.services.demo_data import upsert_reference_data

st.set_page_config(page_title="Fish Ops", page_icon="🐟", layout="wide")

st.title("🐟 Fish Ops — Cold-Chain Stock Tracker")
st.caption("Sorting by size class, storage capacity, transfers between locations, outlet dispatch and receiving.")

settings = get_settings()
conn = get_conn(settings.db_path, settings.db_timeout_s)
ensure_schema(conn)
upsert_reference_data(conn)

with st.sidebar:
    st.subheader("Environment")
    st.write(f"**Data directory:** `{settings.data_dir}`")
    st.write(f"**Database:** `{settings.db_path.name}`")

st.info(
    "Use the left sidebar navigation. Start with **🧪 Data Management** to load demo data, then try **Intake & Processing**, **Sorting**, **Transfers**, and **Orders & Dispatch**.",
    icon="ℹ️",
)
