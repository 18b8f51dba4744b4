"""
Yield Hunter - Streamlit Application
Options-yield dashboard for QQQ premium selling (CSP / PCS / CC)
"""
import streamlit as st
import pandas as pd
from datetime import date

# Page config must be first Streamlit command
st.set_page_config(
    page_title="Yield Hunter",
    page_icon="📈",
    layout="wide",
    initial_sidebar_state="expanded"
)

import plotly.graph_objects as go

from calculations import next_friday
from config import DEFAULT_SPREAD_WIDTH, TICKER, setup_logging
from market_data import FetchInProgressError, YieldHunterService
from market_data.models import MODE_AI_SEARCH, MODE_RESTRICTED, MODE_SNAPSHOT
from models import FetchStatus, Strategy
from option_book import DuplicateContractError
from persistence import get_gemini_key, get_polygon_key, save_gemini_key, save_polygon_key

setup_logging()

STRATEGY_LABELS = {
    Strategy.CSP: "Cash-Secured Put (CSP)",
    Strategy.PCS: "Put Credit Spread (PCS)",
    Strategy.CC: "Covered Call (CC)",
}

MODE_BADGES = {
    MODE_SNAPSHOT: "🟢 Snapshot mode (full chain, IV + delta)",
    MODE_RESTRICTED: "🟡 Restricted tier mode (3 contracts, no greeks)",
    MODE_AI_SEARCH: "🟣 AI search mode (Gemini + Google Search)",
}


# ============================================================
# FORMATTING HELPERS - absent values render as N/A, never 0
# ============================================================
def format_currency(value, decimals=2):
    if value is None or pd.isna(value):
        return "N/A"
    value = float(value)
    formatted = f"${abs(value):,.{decimals}f}"
    return f"-{formatted}" if value < 0 else formatted


def format_percentage(value, decimals=2):
    """value is already in percent units (12.5 -> 12.50%)"""
    if value is None or pd.isna(value):
        return "N/A"
    return f"{float(value):,.{decimals}f}%"


def format_number(value, decimals=2):
    if value is None or pd.isna(value):
        return "N/A"
    return f"{float(value):,.{decimals}f}"


def get_service() -> YieldHunterService:
    """One orchestrator per browser session, keys loaded from local storage."""
    if 'service' not in st.session_state:
        st.session_state.service = YieldHunterService(
            polygon_key=get_polygon_key(),
            gemini_key=get_gemini_key(),
        )
    return st.session_state.service


def render_settings(service: YieldHunterService):
    with st.sidebar.expander("🔑 API Settings", expanded=st.session_state.get('show_settings', False)):
        st.caption("Keys are stored only in a local settings file on this machine.")

        polygon_key = st.text_input("Polygon.io API Key (recommended)", value=service.polygon_key, type="password")
        if polygon_key != service.polygon_key:
            save_polygon_key(polygon_key)
            service.set_keys(polygon_key=polygon_key)
            st.session_state.pop('key_check', None)

        if st.button("Test Key", disabled=not polygon_key.strip()):
            with st.spinner("Verifying key..."):
                st.session_state.key_check = service.validate_polygon_key()

        check = st.session_state.get('key_check')
        if check is not None:
            (st.success if check.valid else st.error)(check.message)

        gemini_key = st.text_input("Gemini API Key (fallback / AI search)", value=service.gemini_key, type="password")
        if gemini_key != service.gemini_key:
            save_gemini_key(gemini_key)
            service.set_keys(gemini_key=gemini_key)
        st.caption("Gemini also powers the VXN volatility card.")


def render_volatility_card(service: YieldHunterService):
    state = service.state
    if state.volatility_loading:
        st.info("Loading VXN volatility...")
        return
    metrics = state.volatility
    if metrics is None:
        return

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("VXN (Nasdaq-100 Volatility)", format_number(metrics.current))
    with col2:
        st.metric("52w Low / High", f"{format_number(metrics.low)} / {format_number(metrics.high)}")
    with col3:
        st.metric("IV Rank", f"{metrics.rank:.0f}")
    with col4:
        show = {"emerald": st.success, "yellow": st.warning, "red": st.error}[metrics.color]
        show(metrics.label)
    st.progress(int(round(metrics.rank)))


def render_table(service: YieldHunterService):
    state = service.state
    df = state.book.to_frame(state.strategy, state.spread_width,
                             current_price=state.current_price, cost_basis=state.cost_basis)
    if df.empty:
        st.info("No contracts yet. Fetch a chain or add a strike manually.")
        return

    display = pd.DataFrame({
        "Strike": df["strike"].map(format_currency),
        "Premium": df["premium"].map(format_currency),
        "DTE": df["dte"],
        "ROI": df["roi"].map(format_percentage),
        "Annualized": df["annualized_return"].map(format_percentage),
        "Breakeven": df["breakeven"].map(format_currency),
        "Capital": df["capital_required"].map(lambda v: format_currency(v, 0)),
        "Delta": df["delta"].map(format_number),
        "IV": df["iv"].map(lambda v: format_percentage(v * 100) if v is not None else "N/A"),
        "Win Rate": df["win_rate"].map(lambda v: format_percentage(v, 0)),
        "OTM Distance": df["distance_pct"].map(format_percentage),
        "ITM": df["itm"].map(lambda itm: "ITM" if itm else ""),
    })
    if state.strategy == Strategy.CC:
        display["Profit if Called"] = df["profit_if_called"].map(format_currency)
        display["Basis ⚠"] = df["below_cost_basis"].map(lambda b: "⚠ below basis" if b else "")
    if state.strategy == Strategy.PCS:
        display["Long Leg"] = df["long_strike"].map(format_currency)
        display["Net Credit"] = df["net_credit"].map(format_currency)
        display["Max Risk"] = df["max_risk"].map(format_currency)
        display["Spread ROI"] = df["spread_roi"].map(format_percentage)
        display["Spread Annualized"] = df["spread_annualized_return"].map(format_percentage)
        display["Width ⚠"] = df["width_mismatch"].map(lambda m: "⚠" if m else "")
    st.dataframe(display, use_container_width=True, hide_index=True)

    # Edit / delete intents
    with st.expander("✏️ Edit or remove a row"):
        row_id = st.selectbox("Contract", df["id"].tolist())
        row = state.book.get(row_id)
        if row is not None:
            col1, col2 = st.columns(2)
            with col1:
                new_strike = st.number_input("Strike", min_value=0.01, value=row.strike, step=1.0, key="edit_strike")
            with col2:
                new_premium = st.number_input("Premium", min_value=0.01, value=row.premium, step=0.05,
                                              key="edit_premium")
            col_save, col_delete = st.columns(2)
            with col_save:
                if st.button("Save", use_container_width=True):
                    try:
                        service.update_row(row_id, new_strike, new_premium)
                        st.rerun()
                    except ValueError as e:
                        st.error(str(e))
            with col_delete:
                if st.button("Delete", use_container_width=True):
                    service.delete_row(row_id)
                    st.rerun()


def render_chart(service: YieldHunterService):
    state = service.state
    df = state.book.to_frame(state.strategy, state.spread_width, current_price=state.current_price)
    if df.empty:
        return
    df = df.sort_values("strike")

    if state.strategy == Strategy.PCS:
        yield_col, money_col = "spread_annualized_return", "net_credit"
        title, money_name = "Spread ROI (annualized)", "Net Credit"
    else:
        yield_col, money_col = "annualized_return", "premium"
        title, money_name = "Yield Curve (annualized)", "Premium"

    fig = go.Figure()
    fig.add_trace(go.Bar(x=df["strike"], y=df[yield_col], name="Annualized %", marker_color="#10b981"))
    fig.add_trace(go.Scatter(
        x=df["strike"], y=df[money_col], name=money_name, yaxis="y2", mode="lines+markers",
        line=dict(color="#60a5fa")
    ))
    if state.current_price:
        fig.add_vline(x=state.current_price, line_dash="dash", annotation_text=f"{TICKER} {format_currency(state.current_price)}")
    fig.update_layout(
        title=title,
        height=400,
        xaxis_title="Strike",
        yaxis=dict(title="Annualized %"),
        yaxis2=dict(title=f"{money_name} ($)", overlaying="y", side="right"),
    )
    st.plotly_chart(fig, use_container_width=True)


def render_manual_entry(service: YieldHunterService):
    with st.form("manual_entry", clear_on_submit=True):
        st.markdown("#### ➕ Add strike manually")
        col1, col2, col3 = st.columns([2, 2, 1])
        with col1:
            strike = st.number_input("Strike", min_value=0.0, step=1.0)
        with col2:
            premium = st.number_input("Premium", min_value=0.0, step=0.05)
        with col3:
            submitted = st.form_submit_button("Add")
        if submitted:
            try:
                service.add_manual_row(strike, premium)
            except DuplicateContractError:
                st.error("That strike already exists for this expiration.")
            except ValueError as e:
                st.error(str(e))


def main():
    service = get_service()
    state = service.state

    st.title(f"📈 {TICKER} Yield Hunter")
    if state.current_price:
        st.metric(f"{TICKER} Price", format_currency(state.current_price))

    render_settings(service)

    with st.sidebar:
        st.markdown("### Strategy")
        strategy = st.radio(
            "Strategy",
            list(Strategy),
            index=list(Strategy).index(state.strategy),
            format_func=lambda s: STRATEGY_LABELS[s],
            label_visibility="collapsed",
        )
        target = st.date_input("Expiration", value=date.fromisoformat(state.target_date or next_friday()))
        cost_basis = state.cost_basis
        spread_width = state.spread_width
        if strategy == Strategy.CC:
            cost_basis = st.number_input("Share cost basis ($)", min_value=0.0, value=float(state.cost_basis), step=1.0)
        if strategy == Strategy.PCS:
            spread_width = st.select_slider("Spread width ($)", options=[1.0, 2.0, 5.0, 10.0, 15.0, 20.0],
                                            value=state.spread_width or DEFAULT_SPREAD_WIDTH)
        service.configure(target_date=target.isoformat(), strategy=strategy,
                          cost_basis=cost_basis, spread_width=spread_width)

        fetch_clicked = st.button("🔍 Fetch option chain", type="primary", use_container_width=True,
                                  disabled=state.status == FetchStatus.LOADING)

    if fetch_clicked:
        progress = st.empty()
        try:
            with st.spinner("Scanning..."):
                outcome = service.fetch(on_progress=lambda msg: progress.caption(msg))
            progress.empty()
            st.session_state.show_settings = outcome.needs_key_setup
        except FetchInProgressError:
            st.warning("A fetch is already running.")

    if state.error_message:
        st.error(state.error_message)
    elif state.warning_message:
        st.warning(state.warning_message)

    if state.mode in MODE_BADGES:
        st.caption(MODE_BADGES[state.mode])

    render_volatility_card(service)
    render_chart(service)
    render_table(service)
    render_manual_entry(service)

    if state.sources:
        with st.expander("🔗 Sources"):
            for source in state.sources:
                st.markdown(f"- [{source.title}]({source.uri})")


if __name__ == "__main__":
    main()
