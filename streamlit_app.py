"""
Streamlit stock market dashboard.

Sections:
- Quote: instant quote card (auto-refreshing), company profile, company news
- Live Ticker: most recent trades from the push feed, newest first
- Dashboard: OHLC chart for a time range, manual refresh, financial metrics
- News: latest general market news with retry
- Sidebar: symbol search, quick select, market status

Process model:
- The trade stream is one process-wide resource (@st.cache_resource)
- Quote pollers and one-shot fetchers live in session state; a poller is
  closed before it is replaced
- Every provider failure renders inside its own section only
"""

import logging
import time

import streamlit as st

from analytics import (
    NOT_AVAILABLE,
    TIME_RANGE_LABELS,
    TIME_RANGES,
    day_range_position,
    format_market_cap,
    format_metric_key,
    format_metric_value,
    format_percent,
    format_price,
    format_signed,
    format_volume,
    metric_series_frame,
    ohlc_frame,
    range_start,
    series_summary,
    trades_frame,
    utc_today,
)
from api import build_clients
from charts import candlestick_figure, line_figure, metric_series_figure
from config import load_settings
from errors import ConfigurationError
from fetcher import AggregateOptions, SeriesRequest, one_shot, quote_poller, series_fetcher
from ingest import CONNECTED, FAILED, StreamManager


# ---------------- Logging ----------------
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("dashboard")


# ---------------- Page Config ----------------
st.set_page_config(
    page_title="Stock Market Dashboard",
    layout="wide",
    initial_sidebar_state="expanded"
)


# ---------------- Constants ----------------
QUICK_SELECT_SYMBOLS = ["AAPL", "GOOGL", "MSFT", "TSLA", "AMZN", "NVDA"]
DEFAULT_SYMBOL = "AAPL"

# Bar size per time range: (multiplier, timespan)
RANGE_BARS = {
    "1D": (5, "minute"),
    "1W": (1, "hour"),
    "1M": (1, "day"),
    "3M": (1, "day"),
    "1Y": (1, "day"),
}

# Annual series plotted under the financials table when present
FINANCIAL_SERIES = ["eps", "roeTTM", "netMargin", "currentRatio"]


# ---------------- Custom CSS ----------------
st.markdown("""
<style>
    .stMetric {
        background: linear-gradient(135deg, #1a1a2e 0%, #16213e 100%);
        padding: 12px;
        border-radius: 10px;
        border: 1px solid #0f3460;
    }
    .stMetric label { color: #00d4ff !important; font-size: 0.85rem; }
    .stMetric [data-testid="stMetricValue"] { font-size: 1.5rem; }
    .main-header {
        background: linear-gradient(135deg, #0f3460 0%, #16213e 100%);
        padding: 25px;
        border-radius: 12px;
        margin-bottom: 20px;
        border: 1px solid #00d4ff;
    }
    .status-running {
        background: linear-gradient(90deg, #2d6a4f, #40916c);
        padding: 10px 15px;
        border-radius: 8px;
        margin: 10px 0;
    }
    .status-stopped {
        background: linear-gradient(90deg, #6c757d, #495057);
        padding: 10px 15px;
        border-radius: 8px;
        margin: 10px 0;
    }
</style>
""", unsafe_allow_html=True)


# ================== SHARED RESOURCES ==================

@st.cache_resource
def get_settings():
    return load_settings()


@st.cache_resource
def get_clients():
    return build_clients(get_settings())


@st.cache_resource
def get_stream() -> StreamManager:
    """One trade stream per server process, started on first use."""
    settings = get_settings()
    manager = StreamManager.from_settings(settings)
    try:
        manager.start(settings.ticker_symbols)
    except ConfigurationError as e:
        logger.warning(f"[STREAM] Not started: {e}")
    return manager


try:
    settings = get_settings()
except ConfigurationError as e:
    st.error(f"❌ Configuration error: {e}")
    st.stop()

logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))
clients = get_clients()


# ---------------- Session State ----------------
if "symbol" not in st.session_state:
    st.session_state.symbol = DEFAULT_SYMBOL
if "show_financials" not in st.session_state:
    st.session_state.show_financials = False
if "profile" not in st.session_state:
    st.session_state.profile = one_shot(lambda s: clients.finnhub.company_profile(s), name="profile")
if "company_news" not in st.session_state:
    st.session_state.company_news = one_shot(lambda s: clients.finnhub.company_news(s), empty=[], name="company-news")
if "market_news" not in st.session_state:
    st.session_state.market_news = one_shot(
        lambda category: clients.finnhub.market_news(category, limit=5), empty=[], name="market-news"
    )
if "financials" not in st.session_state:
    st.session_state.financials = one_shot(lambda s: clients.finnhub.basic_financials(s), name="financials")
if "market_status" not in st.session_state:
    st.session_state.market_status = one_shot(
        lambda _: clients.alpha_vantage.market_status(), empty=[], name="market-status"
    )
if "series" not in st.session_state:
    st.session_state.series = series_fetcher(clients)


def current_quote_poller(symbol: str):
    """Poller for *symbol*; the previous one is closed when the symbol changes."""
    poller = st.session_state.get("quote_poller")
    if poller is not None and poller.inputs == symbol and not poller.closed:
        return poller
    if poller is not None:
        logger.info(f"[FETCH] Replacing quote poller {poller.inputs!r} → {symbol!r}")
        poller.close()
    poller = quote_poller(clients, symbol)
    if symbol:
        poller.start()
    st.session_state.quote_poller = poller
    return poller


def select_symbol(symbol: str):
    st.session_state.symbol = symbol
    st.session_state.show_financials = False


def show_error(state):
    if state.error:
        st.error(f"❌ {state.error}")


def article_title(article):
    headline = article.headline or NOT_AVAILABLE
    if article.url:
        return f"**[{headline}]({article.url})**"
    return f"**{headline}**"


# ================== SIDEBAR ==================
with st.sidebar:
    st.header("⚙️ Configuration")

    # ========== SYMBOL SEARCH ==========
    st.subheader("🔎 Symbol")
    st.text_input("Search symbol", key="symbol", placeholder="e.g. AAPL", help="Stock ticker symbol")

    st.caption("Quick select")
    cols = st.columns(3)
    for i, sym in enumerate(QUICK_SELECT_SYMBOLS):
        with cols[i % 3]:
            st.button(sym, key=f"quick_{sym}", on_click=select_symbol, args=(sym,), use_container_width=True)

    st.divider()

    # ========== REFRESH ==========
    st.subheader("🔄 Refresh")
    auto_refresh = st.checkbox("Auto-refresh", value=True)
    refresh_rate = st.selectbox(
        "Refresh Rate",
        options=[1.0, 2.0, 5.0, 10.0],
        index=1,
        format_func=lambda x: f"{x:.0f}s"
    )

    st.divider()

    # ========== MARKET STATUS ==========
    st.subheader("🌍 Market Status")
    status_fetcher = st.session_state.market_status
    status_state = status_fetcher.update("MARKET_STATUS")
    if status_state.loading and not status_state.data:
        st.caption("Loading market status...")
    show_error(status_state)
    for venue in status_state.data or []:
        if venue.market_type != "Equity":
            continue
        badge = "🟢" if venue.is_open else "⚫"
        st.caption(f"{badge} **{venue.region}** · {venue.primary_exchanges or NOT_AVAILABLE} ({venue.local_open or NOT_AVAILABLE}–{venue.local_close or NOT_AVAILABLE})")
    if status_state.error and st.button("Retry", key="retry_status"):
        status_fetcher.refresh()
        st.rerun()


symbol = (st.session_state.symbol or "").strip().upper()


# ================== MAIN CONTENT ==================

# Header
st.markdown("""
<div class="main-header">
    <h1 style="margin:0; color: #00d4ff;">Stock Market Dashboard</h1>
    <p style="margin:5px 0 0 0; color: #a0a0a0;">Quotes • Live Trades • Historical Charts • Market News</p>
</div>
""", unsafe_allow_html=True)

tab_quote, tab_ticker, tab_dashboard, tab_news = st.tabs(
    ["💹 Quote", "⚡ Live Ticker", "📈 Dashboard", "📰 News"]
)


# ================== QUOTE ==================
with tab_quote:
    if not symbol:
        st.info("👈 **Enter a symbol** to see its quote.")
    else:
        poller = current_quote_poller(symbol)
        state = poller.state
        quote = state.data

        st.markdown(f"### {symbol}")
        if quote is None and state.error is None:
            st.caption("⏳ Loading quote...")
        show_error(state)

        if quote is not None:
            col1, col2, col3, col4 = st.columns(4)
            col1.metric(
                "Price",
                format_price(quote.current),
                f"{format_signed(quote.change)} ({format_percent(quote.percent_change)})",
            )
            col2.metric("Open", format_price(quote.open))
            col3.metric("Previous Close", format_price(quote.previous_close))
            col4.metric("Day High / Low", f"{format_price(quote.high)} / {format_price(quote.low)}")

            position = day_range_position(quote.current, quote.low, quote.high)
            st.progress(int(round(position)), text=f"Day range position: {position:.0f}%")
            if quote.as_of:
                st.caption(f"As of {quote.as_of:%Y-%m-%d %H:%M:%S} UTC · refreshes every {poller.interval:.0f}s")

        st.divider()
        left, right = st.columns([1, 1])

        # ---------- Profile ----------
        with left:
            st.subheader("🏢 Company Profile")
            profile_state = st.session_state.profile.update(symbol)
            show_error(profile_state)
            profile = profile_state.data
            if profile_state.loading and profile is None:
                st.caption("Loading profile...")
            elif profile is None and profile_state.ok:
                st.caption("No profile available.")
            elif profile is not None:
                if profile.logo:
                    st.image(profile.logo, width=64)
                st.markdown(f"**{profile.name or symbol}** ({profile.exchange or NOT_AVAILABLE})")
                st.caption(f"Industry: {profile.industry or NOT_AVAILABLE} · Country: {profile.country or NOT_AVAILABLE}")
                st.caption(f"Market cap: {format_market_cap(profile.market_cap)} · IPO: {profile.ipo or NOT_AVAILABLE}")
                if profile.weburl:
                    st.markdown(f"[Website]({profile.weburl})")

        # ---------- Company news ----------
        with right:
            st.subheader("🗞️ Company News")
            news_state = st.session_state.company_news.update(symbol)
            show_error(news_state)
            if news_state.loading and not news_state.data:
                st.caption("Loading news...")
            elif news_state.ok and not news_state.data:
                st.caption("No recent news.")
            for article in news_state.data or []:
                published = f"{article.published:%Y-%m-%d}" if article.published else ""
                st.markdown(article_title(article))
                st.caption(f"{article.source or ''} · {published}")


# ================== LIVE TICKER ==================
with tab_ticker:
    stream = get_stream()
    st.subheader("⚡ Live Trades")

    status = stream.status
    if stream.running:
        st.markdown(f"""
        <div class="status-running">
        🟢 <strong>{status.upper()}</strong><br>
        <small>{', '.join(stream.current_symbols)}</small>
        </div>
        """, unsafe_allow_html=True)
    else:
        st.markdown(f"""
        <div class="status-stopped">
        ⚫ <strong>{status.upper()}</strong><br>
        <small>Live feed not running</small>
        </div>
        """, unsafe_allow_html=True)

    if not settings.has("finnhub_api_key"):
        st.warning("FINNHUB_API_KEY is not configured; live trades are disabled.")
    elif status == FAILED and stream.last_error:
        st.error(f"❌ {stream.last_error}")

    trades = stream.buffer.snapshot()
    latest = stream.buffer.latest_by_symbol()
    if latest:
        cols = st.columns(min(len(latest), 4))
        for i, (sym, trade) in enumerate(list(latest.items())[:4]):
            cols[i].metric(sym, format_price(trade.price), f"vol {format_volume(trade.volume)}", delta_color="off")

    if trades:
        st.dataframe(trades_frame(trades), use_container_width=True, hide_index=True)
    elif status == CONNECTED:
        st.info("⏳ Waiting for trades...")


# ================== DASHBOARD ==================
with tab_dashboard:
    if not symbol:
        st.info("👈 **Enter a symbol** to load its chart.")
    else:
        c1, c2, c3 = st.columns([2, 2, 1])
        with c1:
            time_range = st.radio(
                "Time range",
                options=list(TIME_RANGES),
                index=2,
                horizontal=True,
                format_func=lambda r: TIME_RANGE_LABELS[r],
            )
        with c2:
            chart_type = st.radio("Chart", options=["Candlestick", "Line"], horizontal=True)
        with c3:
            refresh_clicked = st.button("🔄 Refresh", use_container_width=True)

        multiplier, timespan = RANGE_BARS[time_range]
        options = AggregateOptions(
            multiplier=multiplier,
            timespan=timespan,
            from_=range_start(time_range),
            to=utc_today().isoformat(),
        )
        series = st.session_state.series
        series_state = series.update(SeriesRequest(symbol, options.resolved()))
        if refresh_clicked:
            series_state = series.refresh()

        show_error(series_state)
        frame = ohlc_frame(series_state.data or [])
        if series_state.loading and frame.empty:
            st.caption("Loading chart...")
        elif series_state.ok and frame.empty:
            st.info("No bars for this range.")

        if not frame.empty:
            summary = series_summary(frame)
            m1, m2, m3, m4 = st.columns(4)
            m1.metric("Last Close", format_price(summary["last_close"]),
                      f"{format_signed(summary['change'])} ({format_percent(summary['change_pct'])})")
            m2.metric("Range High", format_price(summary["high"]))
            m3.metric("Range Low", format_price(summary["low"]))
            volatility = summary["volatility_pct"]
            m4.metric("Volatility", f"{volatility:.2f}%" if volatility is not None else NOT_AVAILABLE)

            if chart_type == "Candlestick":
                fig = candlestick_figure(frame, symbol)
            else:
                fig = line_figure(frame, symbol)
            st.plotly_chart(fig, use_container_width=True)

        st.divider()

        # ---------- Financials (on demand) ----------
        st.subheader("📊 Financial Metrics")
        if not st.session_state.show_financials:
            if st.button("Load financial metrics"):
                st.session_state.show_financials = True
                st.rerun()
        else:
            fin_state = st.session_state.financials.update(symbol)
            show_error(fin_state)
            financials = fin_state.data
            if fin_state.loading and financials is None:
                st.caption("Loading metrics...")
            elif financials is not None:
                ratios = financials.key_ratios()
                if not ratios:
                    st.caption("No metrics available.")
                else:
                    rows = [
                        {"Metric": format_metric_key(k), "Value": format_metric_value(v)}
                        for k, v in sorted(ratios.items())
                    ]
                    st.dataframe(rows, use_container_width=True, hide_index=True, height=320)

                plotted = [name for name in FINANCIAL_SERIES if financials.series.annual.get(name)]
                chart_cols = st.columns(2)
                for i, name in enumerate(plotted):
                    points = metric_series_frame(financials.series.annual[name])
                    with chart_cols[i % 2]:
                        st.plotly_chart(
                            metric_series_figure(points, f"{format_metric_key(name)} (annual)"),
                            use_container_width=True,
                        )


# ================== NEWS ==================
with tab_news:
    st.subheader("📰 Market News")
    news = st.session_state.market_news
    news_state = news.update("general")
    if news_state.loading and not news_state.data:
        st.caption("Loading news...")
    if news_state.error:
        st.error(f"❌ {news_state.error}")
        if st.button("Retry", key="retry_news"):
            news.refresh()
            st.rerun()
    for article in news_state.data or []:
        with st.container(border=True):
            cols = st.columns([1, 4])
            if article.image:
                cols[0].image(article.image, use_container_width=True)
            cols[1].markdown(article_title(article))
            cols[1].caption((article.summary or NOT_AVAILABLE)[:240])
            published = f"{article.published:%Y-%m-%d %H:%M}" if article.published else ""
            cols[1].caption(f"{article.source or ''} · {published}")


st.caption("ℹ️ Live feed runs in a background thread via @st.cache_resource")

# Auto-refresh
if auto_refresh:
    time.sleep(refresh_rate)
    st.rerun()
