# mtf_trading/universe.py
"""
Symbol Universe

Static list of tradable NSE symbols (NIFTY 50 constituents) grouped by
sector. Batch scans take their input from here.
"""

from typing import Dict, List, Optional

SECTORS: Dict[str, List[str]] = {
    'Banking': [
        'HDFCBANK', 'ICICIBANK', 'SBIN', 'KOTAKBANK', 'AXISBANK', 'INDUSINDBK',
    ],
    'Financial Services': [
        'BAJFINANCE', 'BAJAJFINSV', 'HDFCLIFE', 'SBILIFE', 'SHRIRAMFIN',
    ],
    'IT': [
        'TCS', 'INFY', 'HCLTECH', 'WIPRO', 'TECHM', 'LTIM',
    ],
    'Energy': [
        'RELIANCE', 'ONGC', 'BPCL', 'NTPC', 'POWERGRID', 'COALINDIA',
    ],
    'Automobile': [
        'MARUTI', 'M&M', 'TATAMOTORS', 'BAJAJ-AUTO', 'EICHERMOT', 'HEROMOTOCO',
    ],
    'FMCG': [
        'HINDUNILVR', 'ITC', 'NESTLEIND', 'BRITANNIA', 'TATACONSUM',
    ],
    'Pharma & Healthcare': [
        'SUNPHARMA', 'DRREDDY', 'CIPLA', 'DIVISLAB', 'APOLLOHOSP',
    ],
    'Metals & Mining': [
        'TATASTEEL', 'JSWSTEEL', 'HINDALCO',
    ],
    'Infrastructure & Cement': [
        'LT', 'ULTRACEMCO', 'GRASIM', 'ADANIPORTS', 'ADANIENT',
    ],
    'Consumer & Telecom': [
        'BHARTIARTL', 'TITAN', 'ASIANPAINT', 'TRENT',
    ],
}

UNKNOWN_SECTOR = 'Other'

_SYMBOL_TO_SECTOR: Dict[str, str] = {
    symbol: sector
    for sector, symbols in SECTORS.items()
    for symbol in symbols
}


def get_all_symbols() -> List[str]:
    """All symbols in sector order."""
    return [symbol for symbols in SECTORS.values() for symbol in symbols]


def get_sector(symbol: str) -> str:
    """Sector for a symbol ('Other' when not in the universe)."""
    return _SYMBOL_TO_SECTOR.get(symbol.upper(), UNKNOWN_SECTOR)


def get_symbols_by_sector(sector: str) -> List[str]:
    return list(SECTORS.get(sector, []))


def get_symbols(sectors: Optional[List[str]] = None, limit: Optional[int] = None) -> List[str]:
    """
    Universe subset for a scan.

    Args:
        sectors: Restrict to these sectors (all when None)
        limit: Cap the number of symbols
    """
    if sectors:
        symbols = [s for sector in sectors for s in SECTORS.get(sector, [])]
    else:
        symbols = get_all_symbols()
    return symbols[:limit] if limit else symbols
