"""Ticker / name → provider coin id resolution."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

# Well-known tickers and names → CoinGecko ids.
CANONICAL_SYMBOLS: Dict[str, str] = {
    "bitcoin": "bitcoin",
    "btc": "bitcoin",
    "ethereum": "ethereum",
    "eth": "ethereum",
    "solana": "solana",
    "sol": "solana",
    "xrp": "ripple",
    "ripple": "ripple",
    "doge": "dogecoin",
    "dogecoin": "dogecoin",
    "cardano": "cardano",
    "ada": "cardano",
    "polkadot": "polkadot",
    "dot": "polkadot",
    "chainlink": "chainlink",
    "link": "chainlink",
    "avax": "avalanche-2",
    "avalanche": "avalanche-2",
    "bnb": "binancecoin",
    "usdt": "tether",
    "usdc": "usd-coin",
    "tron": "tron",
    "trx": "tron",
    "xlm": "stellar",
    "stellar": "stellar",
    "aave": "aave",
    "algo": "algorand",
    "algorand": "algorand",
    "apt": "aptos",
    "aptos": "aptos",
    "arb": "arbitrum",
    "arbitrum": "arbitrum",
    "op": "optimism",
    "optimism": "optimism",
    "matic": "matic-network",
    "polygon": "matic-network",
    "near": "near",
    "ftm": "fantom",
    "fantom": "fantom",
    "sand": "the-sandbox",
    "sandbox": "the-sandbox",
    "imx": "immutable-x",
    "axs": "axie-infinity",
    "blur": "blur",
    "mantle": "mantle",
    "celestia": "celestia",
    "sei": "sei-network",
    "weth": "weth",
}


def normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


class SymbolResolver:
    """
    Deterministic resolution of a user-supplied identifier against a list
    of candidate coins ({id, symbol, name}).

    Order, first match wins:
      1. exact identifier match
      2. canonical well-known-symbol table
      3. symbol match, shortest identifier first
      4. exact name match
    """

    def __init__(self, canonical: Mapping[str, str] = None) -> None:
        self._canonical = dict(CANONICAL_SYMBOLS if canonical is None else canonical)

    def canonical_id(self, query: str) -> Optional[str]:
        return self._canonical.get(normalize(query))

    def resolve(self, query: str, candidates: Iterable[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
        wanted = normalize(query)
        if not wanted:
            return None
        coins: List[Mapping[str, Any]] = list(candidates)

        for coin in coins:
            if normalize(coin.get("id", "")) == wanted:
                return coin

        canonical = self._canonical.get(wanted)
        if canonical:
            for coin in coins:
                if coin.get("id") == canonical:
                    return coin

        symbol_hits = [c for c in coins if normalize(c.get("symbol", "")) == wanted]
        if symbol_hits:
            # min() keeps the first of equal-length ids
            return min(symbol_hits, key=lambda c: len(c.get("id", "")))

        for coin in coins:
            if normalize(coin.get("name", "")) == wanted:
                return coin

        logger.debug("No match for %r among %d candidates", query, len(coins))
        return None
