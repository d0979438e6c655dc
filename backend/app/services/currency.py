"""Currency helpers for Meta budgets: symbols, minimums, and USD exchange rates."""

import logging
import re

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {
    "USD": "$",
    "INR": "₹",
    "EUR": "€",
    "GBP": "£",
    "AUD": "A$",
    "CAD": "C$",
    "SGD": "S$",
    "AED": "د.إ",
    "BRL": "R$",
    "MXN": "Mex$",
}

CURRENCY_NAMES = {
    "USD": "US Dollar",
    "INR": "Indian Rupee",
    "EUR": "Euro",
    "GBP": "British Pound",
    "AUD": "Australian Dollar",
    "CAD": "Canadian Dollar",
    "SGD": "Singapore Dollar",
    "AED": "UAE Dirham",
    "BRL": "Brazilian Real",
    "MXN": "Mexican Peso",
}

# Meta's minimum daily budget, in whole units of the account currency
MINIMUM_DAILY_BUDGETS = {
    "USD": 1.00,
    "INR": 40.00,
    "EUR": 1.00,
    "GBP": 1.00,
    "AUD": 1.50,
    "CAD": 1.50,
    "SGD": 1.50,
    "AED": 4.00,
    "BRL": 5.00,
    "MXN": 20.00,
}

# Approximate units of each currency per 1 USD, used when live rates are unavailable
FALLBACK_USD_RATES = {
    "USD": 1.00,
    "INR": 83.00,
    "EUR": 0.92,
    "GBP": 0.79,
    "AUD": 1.53,
    "CAD": 1.36,
    "SGD": 1.35,
    "AED": 3.67,
    "BRL": 5.00,
    "MXN": 17.00,
}

BUDGET_RANGES = {
    "USD": {"min": 2, "max": 150, "default": 75},
    "INR": {"min": 150, "max": 12000, "default": 6000},
    "EUR": {"min": 2, "max": 140, "default": 70},
    "GBP": {"min": 2, "max": 120, "default": 60},
    "AUD": {"min": 3, "max": 230, "default": 115},
    "CAD": {"min": 3, "max": 200, "default": 100},
    "SGD": {"min": 3, "max": 200, "default": 100},
    "AED": {"min": 7, "max": 550, "default": 275},
    "BRL": {"min": 10, "max": 750, "default": 375},
    "MXN": {"min": 35, "max": 2550, "default": 1275},
}

_NON_NUMERIC_RE = re.compile(r"[^0-9.]")


def get_currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency, currency)


def format_currency(amount: float, currency: str, decimals: int = 2) -> str:
    """Format ``amount`` with its currency symbol, e.g. ``$75.00`` or ``R$ 10.00``."""
    symbol = get_currency_symbol(currency)
    formatted = f"{amount:.{decimals}f}"
    if currency == "BRL":
        return f"{symbol} {formatted}"
    return f"{symbol}{formatted}"


def parse_currency(text: str) -> float:
    """Parse a display string such as ``₹750.00`` back into a number (0 when unparsable)."""
    cleaned = _NON_NUMERIC_RE.sub("", text or "")
    try:
        return float(cleaned)
    except ValueError:
        # "" or something like "1.2.3"; keep the leading valid prefix
        match = re.match(r"\d*\.?\d+|\d+", cleaned)
        return float(match.group(0)) if match else 0.0


def get_minimum_budget(currency: str) -> float:
    return MINIMUM_DAILY_BUDGETS.get(currency, 1.00)


def convert_currency(amount: float, from_currency: str, to_currency: str) -> float:
    """Convert between currencies through USD using the static rate table.

    Display only: Meta always charges in the ad account's currency.
    """
    if from_currency == to_currency:
        return amount
    from_rate = FALLBACK_USD_RATES.get(from_currency, 1.0)
    to_rate = FALLBACK_USD_RATES.get(to_currency, 1.0)
    return amount / from_rate * to_rate


def get_budget_range(currency: str) -> dict:
    return dict(BUDGET_RANGES.get(currency, BUDGET_RANGES["USD"]))


class ExchangeRateService:
    """Live USD exchange rates with a static fallback table."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings()
        self.api_url = settings.exchange_rate_api_url
        self._transport = transport

    async def get_usd_rate(self, currency: str) -> float:
        """Return how many units of ``currency`` one USD buys."""
        if currency == "USD":
            return 1.0

        logger.info("Fetching live exchange rate: USD -> %s", currency)
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                resp = await client.get(self.api_url)
            data = resp.json() if resp.is_success else {}
            rates = data.get("rates") if isinstance(data, dict) else None
            rate = rates.get(currency) if isinstance(rates, dict) else None
            if rate:
                logger.info("Live exchange rate: 1 USD = %s %s", rate, currency)
                return float(rate)
            logger.warning("No live rate for %s (HTTP %s), using fallback", currency, resp.status_code)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Exchange rate API error for %s: %s; using fallback", currency, e)

        rate = FALLBACK_USD_RATES.get(currency, 1.0)
        logger.info("Fallback exchange rate: 1 USD = %s %s", rate, currency)
        return rate
