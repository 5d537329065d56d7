"""
Branch Sales Analytics

A Streamlit page for the sales analytics view of the operations dashboard.
Run with: streamlit run app.py
"""

import sys
import asyncio
from pathlib import Path
from datetime import date, timedelta

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

import streamlit as st
import plotly.graph_objects as go

from analytics import Dimension, ValueField, buckets_table, trend_table
from analytics.aggregation import buckets_to_frame
from analytics.trends import trend_to_frame
from clients import BackendClient, DashboardLoader, QueryFilters, configure_logging, get_settings
from livesync import CacheSynchronizer, DashboardError

settings = get_settings()
configure_logging(settings)

st.set_page_config(
    page_title="Branch Sales Analytics",
    page_icon="📈",
    layout="wide",
)

st.title("📈 Branch Sales Analytics")


@st.cache_resource
def get_cache() -> CacheSynchronizer:
    """One cache per server process, shared across reruns."""
    return CacheSynchronizer(default_ttl=settings.cache_ttl_seconds)


async def load_views(filters: QueryFilters, value: ValueField):
    async with BackendClient(settings) as client:
        loader = DashboardLoader(client, get_cache(), settings)
        sales, comparison = await asyncio.gather(
            loader.sales_view(filters, value),
            loader.orders_vs_returns(filters),
        )
        return sales, comparison


# --- Filters ---
with st.sidebar:
    st.header("Filters")
    language = st.radio("Language", ["ar", "en"], index=0 if settings.language == "ar" else 1)
    today = date.today()
    period = st.date_input("Period", value=(today - timedelta(days=29), today), max_value=today)
    # A range picker returns a single date until the second click
    start_date, end_date = (period[0], period[-1]) if isinstance(period, tuple) else (period, period)
    branch = st.text_input("Branch ID") or None
    department = st.text_input("Department ID") or None
    search = st.text_input("Product search") or None
    value = ValueField(st.selectbox("Measure", [v.value for v in ValueField]))

    if st.button("Refresh"):
        get_cache().invalidate(lambda fingerprint: True)

filters = QueryFilters(
    branch=branch,
    department=department,
    product_search=search,
    start_date=start_date,
    end_date=end_date,
)

try:
    with st.spinner("Loading sales..."):
        sales, comparison = asyncio.run(load_views(filters, value))
except DashboardError as exc:
    st.error(f"Could not load analytics: {exc.message or exc}")
    st.stop()

# --- Key Metrics Row ---
col1, col2, col3, col4 = st.columns(4)
col1.metric("Total Sales", f"{sales.totals['total_amount']:,.2f}")
col2.metric("Sales Count", f"{sales.totals['count']:,}")
col3.metric("Average Sale", f"{sales.totals['average']:,.2f}")
col4.metric("Return Rate", f"{comparison.return_rate:.1%}")

if sales.rejected:
    st.warning(f"{sales.rejected} malformed records were skipped")

st.divider()

# --- Trend ---
trend_df = trend_to_frame(sales.trend)
fig_trend = go.Figure(
    data=[
        go.Scatter(
            x=trend_df["period"],
            y=trend_df["total_amount" if value is ValueField.AMOUNT else "total_quantity"],
            mode="lines+markers",
            line_color="#3498db",
        )
    ]
)
fig_trend.update_layout(title="Daily Sales", height=300, margin=dict(t=40, b=20, l=20, r=20))
st.plotly_chart(fig_trend, use_container_width=True)


def ranked_chart(buckets, dimension: Dimension, title: str, color: str) -> go.Figure:
    frame = buckets_to_frame(buckets)
    labels = [sales.names.resolve(dimension, key, language) for key in frame["key"]]
    measure = "total_amount" if value is ValueField.AMOUNT else "total_quantity"
    fig = go.Figure(data=[go.Bar(x=frame[measure], y=labels, orientation="h", marker_color=color)])
    fig.update_layout(
        title=title,
        height=300,
        margin=dict(t=40, b=20, l=20, r=20),
        yaxis=dict(autorange="reversed"),
    )
    return fig


# --- Rankings ---
left_col, right_col = st.columns(2)
with left_col:
    st.plotly_chart(
        ranked_chart(sales.by_product.top, Dimension.PRODUCT, "Top Products", "#2ecc71"),
        use_container_width=True,
    )
    st.plotly_chart(
        ranked_chart(sales.by_branch.top, Dimension.BRANCH, "Branches", "#9b59b6"),
        use_container_width=True,
    )
with right_col:
    st.plotly_chart(
        ranked_chart(sales.by_product.least, Dimension.PRODUCT, "Least Products", "#e74c3c"),
        use_container_width=True,
    )
    st.plotly_chart(
        ranked_chart(sales.by_department.top, Dimension.DEPARTMENT, "Departments", "#f39c12"),
        use_container_width=True,
    )

st.divider()

# --- Orders vs Returns ---
st.subheader("Orders vs Returns")
fig_cmp = go.Figure(
    data=[
        go.Bar(name="Orders", x=[p.period_label for p in comparison.points],
               y=[p.orders_amount for p in comparison.points], marker_color="#3498db"),
        go.Bar(name="Returns", x=[p.period_label for p in comparison.points],
               y=[p.returns_amount for p in comparison.points], marker_color="#e74c3c"),
    ]
)
fig_cmp.update_layout(barmode="group", height=300, margin=dict(t=20, b=20, l=20, r=20))
st.plotly_chart(fig_cmp, use_container_width=True)

# --- Export ---
with st.expander("📥 Export"):
    products = buckets_table("Products", sales.by_product.top, Dimension.PRODUCT, sales.names, language)
    trend = trend_table("Trend", sales.trend, language)
    st.dataframe(products.to_frame(), use_container_width=True, hide_index=True)
    st.download_button("Products CSV", products.to_csv(), file_name="products.csv")
    st.download_button("Trend CSV", trend.to_csv(), file_name="trend.csv")
