import asyncio

import pytest

from core.errors import SigningUnavailable
from core.wbi import WbiSigner, build_signed_query, get_mixin_key

IMG_KEY = "7cd084941338484aae1ad9425b84077c"
SUB_KEY = "4932caff0ff746eab6f01bf08b70ac45"

NAV_PAYLOAD = {
    "code": -101,
    "data": {
        "isLogin": False,
        "wbi_img": {
            "img_url": f"https://i0.hdslb.com/bfs/wbi/{IMG_KEY}.png",
            "sub_url": f"https://i0.hdslb.com/bfs/wbi/{SUB_KEY}.png",
        },
    },
}


class FakeNavClient:
    def __init__(self, payloads):
        self.payloads = list(payloads)
        self.calls = 0

    async def get(self, url, **kwargs):
        self.calls += 1
        payload = self.payloads.pop(0)
        if isinstance(payload, Exception):
            raise payload
        return payload


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_mixin_key_matches_published_vector():
    key = get_mixin_key(IMG_KEY + SUB_KEY)

    assert key == "ea1db124af3c7062474693fa704f4ff8"
    assert len(key) == 32
    assert get_mixin_key(IMG_KEY + SUB_KEY) == key


def test_signed_query_matches_published_vector():
    query = build_signed_query({"foo": "114", "bar": "514", "zab": 1919810}, IMG_KEY, SUB_KEY, 1702204169)

    assert query == "bar=514&foo=114&wts=1702204169&zab=1919810&w_rid=8f6f2b5b3d485fe1886cec6a0be8c5d4"


def test_signed_query_strips_reserved_characters_and_encodes_values():
    query = build_signed_query({"keyword": "a!b'c(d)e*f", "name": "哔 哩"}, IMG_KEY, SUB_KEY, 1)

    assert "keyword=abcdef" in query
    assert "name=%E5%93%94%20%E5%93%A9" in query
    assert query.index("keyword=") < query.index("name=") < query.index("wts=")


def test_signing_is_deterministic_for_fixed_keys_and_timestamp():
    params = {"mid": "2", "platform": "web"}

    first = build_signed_query(params, IMG_KEY, SUB_KEY, 1700000000)
    second = build_signed_query(dict(reversed(list(params.items()))), IMG_KEY, SUB_KEY, 1700000000)

    assert first == second
    assert params == {"mid": "2", "platform": "web"}


def test_signer_caches_keys_until_expiry():
    async def runner():
        clock = Clock()
        client = FakeNavClient([NAV_PAYLOAD, NAV_PAYLOAD])
        signer = WbiSigner(client, cache_duration=300, clock=clock)

        await signer.sign({"mid": "1"})
        clock.now += 299
        await signer.sign({"mid": "1"})
        assert client.calls == 1

        clock.now += 2
        await signer.sign({"mid": "1"})
        assert client.calls == 2

    asyncio.run(runner())


def test_signer_uses_stale_keys_when_refresh_fails():
    async def runner():
        clock = Clock()
        client = FakeNavClient([NAV_PAYLOAD, RuntimeError("nav down")])
        signer = WbiSigner(client, cache_duration=300, clock=clock)

        fresh = await signer.sign({"mid": "1"}, now=1702204169)
        clock.now += 600
        stale = await signer.sign({"mid": "1"}, now=1702204169)

        assert stale == fresh

    asyncio.run(runner())


def test_signer_without_any_keys_raises_signing_unavailable():
    async def runner():
        signer = WbiSigner(FakeNavClient([RuntimeError("nav down")]), clock=Clock())
        with pytest.raises(SigningUnavailable):
            await signer.sign({"mid": "1"})

    asyncio.run(runner())


def test_clear_cache_forces_refetch():
    async def runner():
        client = FakeNavClient([NAV_PAYLOAD, NAV_PAYLOAD])
        signer = WbiSigner(client, clock=Clock())

        await signer.sign({})
        assert signer.status()["has_keys"] is True
        signer.clear_cache()
        assert signer.status() == {"has_keys": False, "expires_in": 0}
        await signer.sign({})
        assert client.calls == 2

    asyncio.run(runner())
