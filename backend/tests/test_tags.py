import pytest

from conftest import OTHER_OWNER, v2_envelope, v2_record
from recordkeeper.utils.tags import tag_fingerprint


@pytest.fixture
def tagged(client):
    client.post(
        "/api/import",
        json=v2_envelope([v2_record("alpha beta"), v2_record("beta gamma"), v2_record("Beta delta beta")]),
    )
    return client


def test_tag_counts_are_per_record_and_normalized(tagged):
    response = tagged.get("/api/tags")

    assert response.status_code == 200
    assert response.json() == [
        {"tag": "beta", "count": 3},
        {"tag": "alpha", "count": 1},
        {"tag": "delta", "count": 1},
        {"tag": "gamma", "count": 1},
    ]


def test_tags_are_owner_scoped(tagged):
    assert tagged.get("/api/tags", headers={"X-Owner-Id": OTHER_OWNER}).json() == []


def test_suggest_by_prefix(tagged):
    response = tagged.get("/api/tags/suggest", params={"q": "B"})

    assert response.json() == {"query": "B", "suggestions": ["beta"]}


def test_suggest_respects_limit(tagged):
    response = tagged.get("/api/tags/suggest", params={"q": "a", "limit": 1})
    assert response.json()["suggestions"] == ["alpha"]


@pytest.mark.parametrize("params", [{"q": ""}, {"q": "a", "limit": 0}, {"q": "a", "limit": 101}])
def test_suggest_rejects_bad_parameters(client, params):
    assert client.get("/api/tags/suggest", params=params).status_code == 422


def test_fingerprint_ignores_order_and_repeats():
    assert tag_fingerprint(["beta", "alpha", "alpha"]) == tag_fingerprint(["alpha", "beta"])
    assert tag_fingerprint(["alpha"]) != tag_fingerprint(["alpha", "beta"])


def test_fingerprint_has_fixed_length():
    long_tags = [f"tag{i:05d}" for i in range(600)]

    assert len(tag_fingerprint(long_tags)) == 64
    assert len(tag_fingerprint([])) == 64
