from unittest.mock import MagicMock

import pytest
from pymongo.errors import AutoReconnect

from errors import FieldValidationError, NotFoundError, WalletError
from schemas import SiteConfig
from site_config import MongoSiteConfigStore, SiteConfigProvider
from wallets import LOCAL, PERSISTED, CryptoWallet, WalletCache, WalletRepository


@pytest.fixture
def cache(tmp_path):
    return WalletCache(str(tmp_path / "wallets.json"))


@pytest.fixture
def store(site_config_collection):
    store = MongoSiteConfigStore(site_config_collection)
    store.save(SiteConfig().model_dump())
    return store


@pytest.fixture
def provider(store):
    return SiteConfigProvider(store)


@pytest.fixture
def repository(provider, store, cache):
    return WalletRepository(provider, store, cache)


class TestCryptoWallet:
    def test_entry_format(self):
        wallet = CryptoWallet("BTC", "Bitcoin", "bc1qxyz")
        assert wallet.to_entry() == "BTC - Bitcoin\nbc1qxyz"
        assert CryptoWallet.parse(wallet.to_entry()) == wallet

    def test_parse_without_name(self):
        assert CryptoWallet.parse("XMR\n4abc") == CryptoWallet("XMR", "XMR", "4abc")


class TestWalletRepository:
    def test_add_persists_and_refreshes(self, repository, provider):
        edit = repository.add_wallet("btc", "bc1qxyz")

        assert edit.stored == PERSISTED
        assert edit.wallets == ["BTC - Bitcoin\nbc1qxyz"]
        assert provider.crypto_wallets == ["BTC - Bitcoin\nbc1qxyz"]

    def test_sixth_wallet_rejected(self, repository):
        for code in ("BTC", "ETH", "SOL", "XRP", "ADA"):
            repository.add_wallet(code, f"{code.lower()}-address")

        with pytest.raises(WalletError, match="Maximum of 5 crypto wallets allowed"):
            repository.add_wallet("DOGE", "doge-address")
        wallets, _ = repository.current()
        assert len(wallets) == 5

    def test_duplicate_code_rejected(self, repository):
        repository.add_wallet("ETH", "0xabc")

        with pytest.raises(WalletError, match="A wallet for ETH already exists"):
            repository.add_wallet("eth", "0xdef")

    def test_required_fields(self, repository):
        with pytest.raises(FieldValidationError) as exc_info:
            repository.add_wallet(" ", "")
        assert set(exc_info.value.errors) == {"code", "address"}

    def test_remove_by_position(self, repository):
        for code in ("BTC", "ETH", "SOL"):
            repository.add_wallet(code, f"{code}-addr")

        edit = repository.remove_wallet(1)

        assert [CryptoWallet.parse(w).code for w in edit.wallets] == ["BTC", "SOL"]

    def test_remove_out_of_range(self, repository):
        with pytest.raises(NotFoundError):
            repository.remove_wallet(0)


class TestLocalFallback:
    def test_write_failure_goes_to_cache(self, provider, cache):
        store = MagicMock()
        store.update.side_effect = AutoReconnect("down")
        repository = WalletRepository(provider, store, cache)

        edit = repository.add_wallet("BTC", "bc1q")

        assert edit.stored == LOCAL
        assert cache.read() == ["BTC - Bitcoin\nbc1q"]
        assert repository.current() == (["BTC - Bitcoin\nbc1q"], LOCAL)
        assert provider.crypto_wallets == []

    def test_missing_config_document_goes_to_cache(self, site_config_collection, cache):
        store = MongoSiteConfigStore(site_config_collection)
        repository = WalletRepository(SiteConfigProvider(store), store, cache)

        assert repository.add_wallet("ETH", "0x1").stored == LOCAL

    def test_sync_pushes_cached_edit(self, repository, cache, provider):
        cache.write(["SOL - Solana\nsol-addr"])

        assert repository.sync() == PERSISTED
        assert cache.read() is None
        assert provider.crypto_wallets == ["SOL - Solana\nsol-addr"]

    def test_sync_without_pending_edit(self, repository):
        assert repository.sync() == PERSISTED

    def test_corrupt_cache_is_ignored(self, cache):
        with open(cache.path, "w", encoding="utf-8") as f:
            f.write("{not json")
        assert cache.read() is None
