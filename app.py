from __future__ import annotations

import streamlit as st

from fishops.config import get_settings
from fishops.logging_config import configure_logging

st.set_page_config(page_title="Fish Ops", page_icon="🐟", layout="wide")

# Every page runs through here, so deep links get the same log setup as Home.
configure_logging(get_settings())

pages = [
    st.Page("home.py", title="Home", icon="🏠"),
    st.Page("pages/0_🧺_Intake_&_Processing.py", title="Intake & Processing", icon="🧺"),
    st.Page("pages/1_🐟_Sorting.py", title="Sorting", icon="🐟"),
    st.Page("pages/2_📦_Inventory.py", title="Inventory & Storage", icon="📦"),
    st.Page("pages/3_🔁_Transfers.py", title="Transfers", icon="🔁"),
    st.Page("pages/4_🚚_Orders_&_Dispatch.py", title="Orders & Dispatch", icon="🚚"),
    st.Page("pages/5_✅_Outlet_Receiving.py", title="Outlet Receiving", icon="✅"),
    st.Page("pages/6_🗑️_Disposal.py", title="Disposal", icon="🗑️"),
    st.Page("pages/7_🧪_Data_Management.py", title="Data Management", icon="🧪"),
    st.Page("pages/8_📊_Reports.py", title="Reports", icon="📊"),
]

st.navigation(pages).run()
