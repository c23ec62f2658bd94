"""
Crypto wallet list editing.

Wallets live in the `crypto` attribute of the site configuration document
as "CODE - Name\\naddress" entries. When that write fails (store down, no
configuration document yet) the edited list is kept in a local JSON cache
instead of being dropped. Precedence:

* a cached list is a pending local edit and is what the admin sees;
* every successful write to the configuration document clears the cache,
  so the persisted list wins again as soon as the store accepts a write;
* `sync()` pushes a pending local edit to the store.
"""

import json
import logging
import os
from typing import List, NamedTuple, Optional, Tuple

from pymongo.errors import PyMongoError

from errors import FieldValidationError, NotFoundError, WalletError
from schemas import MAX_CRYPTO_WALLETS

logger = logging.getLogger(__name__)

PERSISTED = "persisted"
LOCAL = "local"

CRYPTO_CURRENCIES = {
    "BTC": "Bitcoin",
    "ETH": "Ethereum",
    "USDT": "Tether USD",
    "BNB": "Binance Coin",
    "SOL": "Solana",
    "XRP": "Ripple",
    "ADA": "Cardano",
    "DOGE": "Dogecoin",
    "AVAX": "Avalanche",
    "DOT": "Polkadot",
    "MATIC": "Polygon",
    "SHIB": "Shiba Inu",
}


class CryptoWallet(NamedTuple):
    code: str
    name: str
    address: str

    def to_entry(self) -> str:
        return f"{self.code} - {self.name}\n{self.address}"

    @classmethod
    def parse(cls, entry: str) -> "CryptoWallet":
        header, _, address = entry.partition("\n")
        code, _, name = header.partition(" - ")
        return cls(code.strip(), name.strip() or code.strip(), address.strip())


class WalletEdit(NamedTuple):
    wallets: List[str]
    stored: str


class WalletCache:
    """Local fallback for wallet edits the configuration store did not accept."""

    def __init__(self, path: str):
        self.path = path

    def read(self) -> Optional[List[str]]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Error parsing stored crypto wallets at %s: %s", self.path, e)
            return None
        if not isinstance(data, list):
            return None
        return [str(w) for w in data]

    def write(self, wallets: List[str]) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(wallets, f)

    def clear(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)


class WalletRepository:
    def __init__(self, provider, store, cache: WalletCache):
        self._provider = provider
        self._store = store
        self._cache = cache

    def current(self) -> Tuple[List[str], str]:
        cached = self._cache.read()
        if cached is not None:
            return cached, LOCAL
        return self._provider.crypto_wallets, PERSISTED

    def add_wallet(self, code: str, address: str, name: Optional[str] = None) -> WalletEdit:
        code = (code or "").strip().upper()
        address = (address or "").strip()
        errors = {}
        if not code:
            errors["code"] = "is required"
        if not address:
            errors["address"] = "is required"
        if errors:
            raise FieldValidationError(errors)

        wallets, _ = self.current()
        if len(wallets) >= MAX_CRYPTO_WALLETS:
            raise WalletError(f"Maximum of {MAX_CRYPTO_WALLETS} crypto wallets allowed")
        if any(CryptoWallet.parse(w).code == code for w in wallets):
            raise WalletError(f"A wallet for {code} already exists")

        entry = CryptoWallet(code, name or CRYPTO_CURRENCIES.get(code, code), address).to_entry()
        return self._write(wallets + [entry])

    def remove_wallet(self, index: int) -> WalletEdit:
        wallets, _ = self.current()
        if index < 0 or index >= len(wallets):
            raise NotFoundError("wallet", str(index))
        return self._write(wallets[:index] + wallets[index + 1:])

    def sync(self) -> str:
        cached = self._cache.read()
        if cached is None:
            return PERSISTED
        return self._write(cached).stored

    def _write(self, wallets: List[str]) -> WalletEdit:
        try:
            self._store.update({"crypto": wallets})
        except (PyMongoError, NotFoundError) as e:
            logger.warning("Crypto wallets kept in local cache, store write failed: %s", e)
            self._cache.write(wallets)
            return WalletEdit(wallets, LOCAL)

        self._cache.clear()
        self._provider.refresh()
        return WalletEdit(wallets, PERSISTED)
