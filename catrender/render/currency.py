"""Currency symbols used on the price bar."""

from typing import Dict, NamedTuple, Optional

DEFAULT_CURRENCY = "INR"


class Currency(NamedTuple):
    code: str
    name: str
    symbol: str


CURRENCIES: Dict[str, Currency] = {
    c.code: c for c in (
        Currency("USD", "US Dollar", "$"),
        Currency("EUR", "Euro", "€"),
        Currency("GBP", "British Pound", "£"),
        Currency("JPY", "Japanese Yen", "¥"),
        Currency("INR", "Indian Rupee", "₹"),
        Currency("AUD", "Australian Dollar", "A$"),
        Currency("CAD", "Canadian Dollar", "C$"),
        Currency("CHF", "Swiss Franc", "CHF"),
        Currency("CNY", "Chinese Yuan", "¥"),
        Currency("AED", "UAE Dirham", "د.إ"),
        Currency("SGD", "Singapore Dollar", "S$"),
        Currency("HKD", "Hong Kong Dollar", "HK$"),
        Currency("MXN", "Mexican Peso", "$"),
        Currency("BRL", "Brazilian Real", "R$"),
        Currency("ZAR", "South African Rand", "R"),
    )
}


def get_currency(code: Optional[str]) -> Currency:
    """Currency for code; unknown or empty codes fall back to INR."""
    return CURRENCIES.get((code or "").upper(), CURRENCIES[DEFAULT_CURRENCY])


def currency_symbol(code: Optional[str]) -> str:
    return get_currency(code).symbol
