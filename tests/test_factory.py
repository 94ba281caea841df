"""アダプターファクトリーのテスト

- ID正規化（amazon_us → amazon）と地域ヒント
- インスタンスのキャッシュと再初期化
- 初期化失敗時の後始末
"""

import asyncio

import pytest

from src.marketplaces.errors import (
    AdapterNotInitializedError,
    AuthenticationError,
    NotSupportedError,
)
from src.marketplaces.factory import (
    AdapterFactory,
    build_carrier_factory,
    build_marketplace_factory,
    normalize_marketplace_id,
    split_marketplace_id,
)


class FakeAdapter:
    """initialize / close の呼び出しを記録するだけのアダプター"""

    marketplace_id = "fake"
    instances = []

    def __init__(self, config=None, clock=None, sleep=None, http_transport=None):
        self.config = config
        self.initialized_with = []
        self.closed = 0
        FakeAdapter.instances.append(self)

    async def initialize(self, credentials):
        if credentials.get("fail"):
            raise AuthenticationError("bad credentials")
        self.initialized_with.append(credentials)

    async def close(self):
        self.closed += 1


class OtherAdapter(FakeAdapter):
    pass


@pytest.fixture
def factory():
    FakeAdapter.instances = []
    f = AdapterFactory()
    f.register_adapter("fake", FakeAdapter)
    return f


class TestNormalize:

    def test_regional_suffix(self):
        """地域サフィックスを分離"""
        assert split_marketplace_id("amazon_us") == ("amazon", "us")
        assert split_marketplace_id("Amazon-DE") == ("amazon", "de")
        assert split_marketplace_id("shopify_za") == ("shopify", "za")

    def test_plain(self):
        """サフィックスなしのID"""
        assert split_marketplace_id("TAKEALOT") == ("takealot", None)
        assert normalize_marketplace_id("amazon") == "amazon"
        assert normalize_marketplace_id(" Shopify ") == "shopify"


class TestRegistry:

    def test_builtin_marketplaces(self):
        """組み込みのマーケットプレイス"""
        assert build_marketplace_factory().supported_marketplaces() == [
            "amazon", "shopify", "takealot",
        ]

    def test_builtin_carriers(self):
        """組み込みの配送業者"""
        factory = build_carrier_factory()
        assert factory.supported_marketplaces() == ["dhl", "fedex"]
        assert factory.is_supported("FedEx")

    def test_duplicate_registration(self, factory):
        """別クラスでの再登録は replace=True が必要"""
        factory.register_adapter("fake", FakeAdapter)
        with pytest.raises(ValueError):
            factory.register_adapter("fake", OtherAdapter)
        factory.register_adapter("fake", OtherAdapter, replace=True)

    def test_unsupported(self, factory):
        """未登録のIDは NotSupportedError"""
        with pytest.raises(NotSupportedError):
            asyncio.run(factory.create_adapter("ebay", {}))


class TestCreateAdapter:

    def test_cached_instance_is_reused(self, factory):
        """キャッシュ済みインスタンスを再初期化して返す"""
        async def go():
            first = await factory.create_adapter("fake", {"key": "1"})
            second = await factory.create_adapter("FAKE", {"key": "2"})
            return first, second

        first, second = asyncio.run(go())
        assert first is second
        assert len(FakeAdapter.instances) == 1
        assert first.initialized_with == [{"key": "1"}, {"key": "2"}]
        assert factory.get_adapter("fake") is first

    def test_region_hint(self):
        """地域サフィックスを region_hint として渡す"""
        factory = AdapterFactory()
        factory.register_adapter("amazon", FakeAdapter)
        adapter = asyncio.run(factory.create_adapter("amazon_de", {"key": "1"}))
        assert adapter.initialized_with == [{"key": "1", "region_hint": "de"}]
        assert factory.has_adapter("amazon")

    def test_explicit_region_hint_wins(self):
        """明示した region_hint が優先"""
        factory = AdapterFactory()
        factory.register_adapter("amazon", FakeAdapter)
        adapter = asyncio.run(factory.create_adapter("amazon_de", {"region_hint": "uk"}))
        assert adapter.initialized_with[0]["region_hint"] == "uk"

    def test_failed_first_initialization(self, factory):
        """初回の初期化失敗はキャッシュしない"""
        with pytest.raises(AuthenticationError):
            asyncio.run(factory.create_adapter("fake", {"fail": True}))
        assert factory.has_adapter("fake") is False
        assert FakeAdapter.instances[0].closed == 1

    def test_failed_reinitialization_evicts(self, factory):
        """再初期化に失敗したらキャッシュから外す"""
        async def go():
            await factory.create_adapter("fake", {"key": "1"})
            await factory.create_adapter("fake", {"fail": True})

        with pytest.raises(AuthenticationError):
            asyncio.run(go())
        assert factory.has_adapter("fake") is False
        with pytest.raises(AdapterNotInitializedError):
            factory.get_adapter("fake")

    def test_amazon_regions_share_one_adapter(self, router):
        """amazon_us / amazon_de / AMAZON は同じAmazonアダプターを再初期化する"""
        router.add("POST", "/auth/o2/token", {"access_token": "Atza|1", "expires_in": 3600})
        factory = build_marketplace_factory(http_transport=router.transport)
        credentials = {"client_id": "id", "client_secret": "secret",
                       "refresh_token": "Atzr|refresh", "seller_id": "SELLER1"}
        seen = []

        async def go():
            try:
                for marketplace_id in ("amazon_us", "amazon_de", "AMAZON"):
                    adapter = await factory.create_adapter(marketplace_id, credentials)
                    seen.append((adapter, adapter.amazon_marketplace_id))
                return factory.active_marketplace_ids()
            finally:
                await factory.close_all_adapters()

        active = asyncio.run(go())
        assert active == ["amazon"]
        assert seen[0][0] is seen[1][0] is seen[2][0]
        assert [mp for _, mp in seen] == ["ATVPDKIKX0DER", "A1PA6795UKMFR9", "ATVPDKIKX0DER"]
        assert len(router.calls("POST", "/auth/o2/token")) == 3

    def test_config_passed_to_adapter(self):
        """設定をアダプターに渡す"""
        factory = AdapterFactory(config={"marketplaces": {}})
        factory.register_adapter("fake", FakeAdapter)
        adapter = asyncio.run(factory.create_adapter("fake", {}))
        assert adapter.config == {"marketplaces": {}}


class TestClose:

    def test_close_adapter(self, factory):
        """アダプターのクローズ"""
        adapter = asyncio.run(factory.create_adapter("fake", {}))
        assert asyncio.run(factory.close_adapter("fake")) is True
        assert adapter.closed == 1
        assert asyncio.run(factory.close_adapter("fake")) is False

    def test_close_all(self, factory):
        """全アダプターのクローズ"""
        factory.register_adapter("other", OtherAdapter)

        async def go():
            await factory.create_adapter("fake", {})
            await factory.create_adapter("other", {})
            await factory.close_all_adapters()

        asyncio.run(go())
        assert factory.active_marketplace_ids() == []
        assert all(a.closed == 1 for a in FakeAdapter.instances)
