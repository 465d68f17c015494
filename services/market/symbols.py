# services/market/symbols.py
"""
Free-form asset string -> market-data provider (FMP) symbol.

normalize_symbol() is total and idempotent: every string maps to some
symbol, and re-normalizing an output returns it unchanged. Callers that need
"unsupported" semantics check exchange prefixes or an allow-list themselves.

FMP has no direct quote for most cash indices, so indices map to their most
liquid ETF/ETN proxy (VIX -> VXX, SPX -> SPY, DXY -> UUP).
"""
from __future__ import annotations

import re
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

KNOWN_EXCHANGES: FrozenSet[str] = frozenset(
    {
        "NASDAQ", "NYSE", "AMEX", "ARCA", "BATS", "OTC",
        "BINANCE", "COINBASE", "KRAKEN", "BITSTAMP", "BYBIT", "CRYPTO",
        "FX", "FX_IDC", "OANDA", "FOREXCOM", "FOREX", "SAXO",
        "TVC", "CBOE", "SP", "DJ", "INDEX", "XETR", "LSE", "TSX",
        "COMEX", "NYMEX", "CBOT", "CME", "ICEUS", "ICEEUR",
    }
)

INDEX_PROXIES: Dict[str, str] = {
    "VIX": "VXX",
    "SPX": "SPY",
    "SP500": "SPY",
    "SPX500": "SPY",
    "US500": "SPY",
    "GSPC": "SPY",
    "NDX": "QQQ",
    "NAS100": "QQQ",
    "US100": "QQQ",
    "NASDAQ": "QQQ",
    "NASDAQ100": "QQQ",
    "IXIC": "QQQ",
    "DJI": "DIA",
    "DJIA": "DIA",
    "DOW": "DIA",
    "US30": "DIA",
    "RUT": "IWM",
    "RUSSELL2000": "IWM",
    "DXY": "UUP",
    "DX": "UUP",
    "USDX": "UUP",
    "DOLLAR": "UUP",
    "FTSE": "EWU",
    "UKX": "EWU",
    "DAX": "EWG",
    "DE40": "EWG",
    "NIKKEI": "EWJ",
    "NKY": "EWJ",
    "N225": "EWJ",
    "TNX": "IEF",
    "US10Y": "IEF",
    "TYX": "TLT",
    "US30Y": "TLT",
}

COMMODITY_ALIASES: Dict[str, str] = {
    "GOLD": "GCUSD",
    "XAU": "GCUSD",
    "XAUUSD": "GCUSD",
    "SILVER": "SIUSD",
    "XAG": "SIUSD",
    "XAGUSD": "SIUSD",
    "OIL": "CLUSD",
    "CRUDE": "CLUSD",
    "CRUDEOIL": "CLUSD",
    "WTI": "CLUSD",
    "USOIL": "CLUSD",
    "BRENT": "BZUSD",
    "UKOIL": "BZUSD",
    "NATGAS": "NGUSD",
    "NATURALGAS": "NGUSD",
    "GAS": "NGUSD",
    "COPPER": "HGUSD",
    "PLATINUM": "PLUSD",
    "XPT": "PLUSD",
    "XPTUSD": "PLUSD",
    "PALLADIUM": "PAUSD",
    "XPD": "PAUSD",
}

# Continuous futures roots (GC1!, ES1!) -> provider symbol
FUTURES_ROOTS: Dict[str, str] = {
    "GC": "GCUSD",
    "SI": "SIUSD",
    "CL": "CLUSD",
    "BZ": "BZUSD",
    "BRN": "BZUSD",
    "NG": "NGUSD",
    "HG": "HGUSD",
    "PL": "PLUSD",
    "PA": "PAUSD",
    "ES": "SPY",
    "MES": "SPY",
    "NQ": "QQQ",
    "MNQ": "QQQ",
    "YM": "DIA",
    "RTY": "IWM",
    "VX": "VXX",
    "DX": "UUP",
}

CRYPTO_BASES: FrozenSet[str] = frozenset(
    {
        "BTC", "ETH", "SOL", "BNB", "XRP", "ADA", "DOGE", "DOT", "AVAX", "MATIC",
        "LINK", "UNI", "ATOM", "LTC", "SHIB", "TRX", "ETC", "XLM", "NEAR", "APT",
        "ARB", "OP", "SUI", "PEPE", "WIF", "BONK", "FET", "RNDR", "IMX", "SEI",
        "INJ", "TON", "BCH", "HBAR",
    }
)

CRYPTO_ALIASES: Dict[str, str] = {
    "BITCOIN": "BTCUSD",
    "ETHEREUM": "ETHUSD",
    "ETHER": "ETHUSD",
    "SOLANA": "SOLUSD",
    "RIPPLE": "XRPUSD",
}

_STABLE_QUOTES = ("USDT", "USDC", "BUSD")
_BARE_TICKER = re.compile(r"[A-Z]{1,5}")
_FUTURES = re.compile(r"^([A-Z]+)\d*!$")
_NOT_SYMBOL_CHARS = re.compile(r"[^A-Z0-9.]")


def exchange_prefix(asset: str) -> Optional[str]:
    """'BINANCE:BTCUSDT' -> 'BINANCE'; None when there is no prefix."""
    s = (asset or "").strip().upper()
    if ":" not in s:
        return None
    return s.split(":", 1)[0].strip() or None


def is_known_exchange(prefix: Optional[str]) -> bool:
    return bool(prefix) and prefix.strip().upper() in KNOWN_EXCHANGES


def _clean(asset: str) -> str:
    s = re.sub(r"\s+", "", str(asset or "")).upper().lstrip("$")
    if ":" in s:
        s = s.rsplit(":", 1)[1]
    m = _FUTURES.match(s)
    if m:
        root = m.group(1)
        return FUTURES_ROOTS.get(root, root)
    return _NOT_SYMBOL_CHARS.sub("", s)


def _resolve(s: str) -> Optional[str]:
    if s in INDEX_PROXIES:
        return INDEX_PROXIES[s]
    if s in COMMODITY_ALIASES:
        return COMMODITY_ALIASES[s]
    if s in CRYPTO_ALIASES:
        return CRYPTO_ALIASES[s]
    if s in CRYPTO_BASES:
        return f"{s}USD"
    for quote in _STABLE_QUOTES:
        if s.endswith(quote) and s[: -len(quote)] in CRYPTO_BASES:
            return f"{s[: -len(quote)]}USD"
    if s.endswith("USD") and s[:-3] in CRYPTO_BASES:
        return s
    return None


def _normalize_clean(s: str) -> str:
    if not s:
        return s
    resolved = _resolve(s)
    if resolved:
        return resolved
    # unknown USDT pair -> USD pair, then re-run on the shorter string
    if s.endswith("USDT") and len(s) > 4:
        return _normalize_clean(s[:-4] + "USD")
    # AAPLUSD -> AAPL (6-letter forex pairs like EURUSD are left alone)
    if s.endswith("USD") and len(s) >= 7 and _BARE_TICKER.fullmatch(s[:-3]):
        return _normalize_clean(s[:-3])
    return s


def normalize_symbol(asset: str) -> str:
    """Map a free-form asset string to the provider symbol. Never raises."""
    return _normalize_clean(_clean(asset))


def normalize_symbols(assets: Iterable[str]) -> List[str]:
    """Normalize, drop empties and dedupe, keeping first-seen order."""
    out: List[str] = []
    seen: Set[str] = set()
    for a in assets or []:
        sym = normalize_symbol(a)
        if sym and sym not in seen:
            seen.add(sym)
            out.append(sym)
    return out


def filter_allowed_symbols(assets: Iterable[str], allowed: Optional[Iterable[str]]) -> List[str]:
    """
    Normalized, deduped symbols that are on the allow-list.

    ``allowed`` entries are normalized too, so 'BINANCE:BTCUSDT' on either
    side matches 'BTC'. A None/empty allow-list lets everything through.
    """
    symbols = normalize_symbols(assets)
    if not allowed:
        return symbols
    allowed_set = {normalize_symbol(a) for a in allowed}
    allowed_set.discard("")
    if not allowed_set:
        return symbols
    return [s for s in symbols if s in allowed_set]


# ---------------------------------------------------------------------------
# Chart symbols (TradingView format) for display collaborators
# ---------------------------------------------------------------------------

_TV_STOCK_EXCHANGES: Dict[str, str] = {
    "AAPL": "NASDAQ", "MSFT": "NASDAQ", "GOOGL": "NASDAQ", "GOOG": "NASDAQ",
    "AMZN": "NASDAQ", "META": "NASDAQ", "NVDA": "NASDAQ", "TSLA": "NASDAQ",
    "AMD": "NASDAQ", "INTC": "NASDAQ", "NFLX": "NASDAQ", "ADBE": "NASDAQ",
    "COIN": "NASDAQ", "MSTR": "NASDAQ", "MARA": "NASDAQ", "RIOT": "NASDAQ",
    "QQQ": "NASDAQ", "PYPL": "NASDAQ", "ABNB": "NASDAQ", "CRWD": "NASDAQ",
    "JPM": "NYSE", "BAC": "NYSE", "WFC": "NYSE", "GS": "NYSE", "MS": "NYSE",
    "BRK.B": "NYSE", "V": "NYSE", "MA": "NYSE", "UNH": "NYSE", "JNJ": "NYSE",
    "XOM": "NYSE", "CVX": "NYSE", "WMT": "NYSE", "PG": "NYSE", "DIS": "NYSE",
    "CRM": "NYSE", "ORCL": "NYSE", "UBER": "NYSE", "PLTR": "NYSE", "SNOW": "NYSE",
    "SPY": "AMEX", "DIA": "AMEX", "IWM": "AMEX", "UUP": "AMEX", "VXX": "CBOE",
    "GLD": "AMEX", "TLT": "NASDAQ", "IEF": "NASDAQ",
}

_TV_DIRECT: Dict[str, str] = {
    "VIX": "CBOE:VIX",
    "SPX": "SP:SPX",
    "NDX": "NASDAQ:NDX",
    "DJI": "DJ:DJI",
    "DXY": "TVC:DXY",
    "GOLD": "TVC:GOLD",
    "XAUUSD": "TVC:GOLD",
    "SILVER": "TVC:SILVER",
    "OIL": "TVC:USOIL",
    "WTI": "TVC:USOIL",
    "BRENT": "TVC:UKOIL",
    "NATGAS": "NYMEX:NG1!",
    "COPPER": "TVC:COPPER",
}

_TV_FROM_PROVIDER: Dict[str, str] = {
    "GCUSD": "TVC:GOLD",
    "SIUSD": "TVC:SILVER",
    "CLUSD": "TVC:USOIL",
    "BZUSD": "TVC:UKOIL",
    "NGUSD": "NYMEX:NG1!",
    "HGUSD": "TVC:COPPER",
}

_FX_CCY = frozenset({"USD", "EUR", "GBP", "JPY", "CHF", "AUD", "CAD", "NZD", "CNH", "TRY", "MXN", "SEK", "NOK"})


def to_tradingview_symbol(asset: str) -> Optional[str]:
    """
    Chart symbol for an asset ('BTC' -> 'BINANCE:BTCUSDT', 'EURUSD' -> 'FX:EURUSD').

    Strings already carrying a known exchange prefix are returned upper-cased.
    None when nothing sensible can be built.
    """
    raw = re.sub(r"\s+", "", str(asset or "")).upper().lstrip("$")
    if not raw:
        return None
    if is_known_exchange(exchange_prefix(raw)):
        return raw
    bare = raw.replace("/", "")
    if bare in _TV_DIRECT:
        return _TV_DIRECT[bare]

    sym = normalize_symbol(raw)
    if sym in _TV_FROM_PROVIDER:
        return _TV_FROM_PROVIDER[sym]
    if sym.endswith("USD") and sym[:-3] in CRYPTO_BASES:
        return f"BINANCE:{sym[:-3]}USDT"
    if len(sym) == 6 and sym[:3] in _FX_CCY and sym[3:] in _FX_CCY:
        return f"FX:{sym}"
    if sym in _TV_STOCK_EXCHANGES:
        return f"{_TV_STOCK_EXCHANGES[sym]}:{sym}"
    if _BARE_TICKER.fullmatch(sym):
        return f"NASDAQ:{sym}"
    return None
