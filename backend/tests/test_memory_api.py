from __future__ import annotations

import pytest

from companion_memory.memory.errors import EmbeddingUnavailable


@pytest.mark.anyio
async def test_memory_crud_flow(client) -> None:
    created = await client.post("/api/memory", json={"text": "I love mountain hiking"})
    assert created.status_code == 201
    (record_id,) = created.json()["ids"]

    listing = await client.get("/api/memory")
    assert listing.status_code == 200
    items = listing.json()["items"]
    assert [item["text"] for item in items] == ["I love mountain hiking"]
    assert items[0]["tag"] == "manual"
    assert items[0]["effective_tag"] == "manual"
    assert "embedding" not in items[0]

    patched = await client.patch(
        f"/api/memory/{record_id}", json={"text": "I love coffee", "tag": "user_input"}
    )
    assert patched.status_code == 200

    count = await client.get("/api/memory/count")
    assert count.json() == {"count": 1}

    deleted = await client.delete(f"/api/memory/{record_id}")
    assert deleted.json() == {"deleted": 1}
    missing = await client.delete(f"/api/memory/{record_id}")
    assert missing.status_code == 404


@pytest.mark.anyio
async def test_long_note_is_chunked(app, client) -> None:
    text = "\n\n".join(["hiking " * 60, "coffee " * 60, "paris " * 60])
    created = await client.post("/api/memory", json={"text": text, "tag": "summary"})
    assert created.status_code == 201
    ids = created.json()["ids"]
    assert len(ids) > 1

    recent = await client.get("/api/memory/recent", params={"limit": 10})
    tags = {item["tag"] for item in recent.json()["items"]}
    assert tags == {f"summary_part_{index}" for index in range(1, len(ids) + 1)}


@pytest.mark.anyio
async def test_grouped_listing_and_clear(client) -> None:
    await client.post("/api/memory", json={"text": "cat naps"})
    await client.post("/api/memory", json={"text": "coffee runs"})

    grouped = await client.get("/api/memory", params={"group_by_date": True})
    groups = grouped.json()["groups"]
    assert len(groups) == 1
    assert len(groups[0]["items"]) == 2

    cleared = await client.delete("/api/memory")
    assert cleared.json() == {"deleted": 2}
    assert (await client.get("/api/memory/count")).json() == {"count": 0}


@pytest.mark.anyio
async def test_search_ranks_relevant_memories(client) -> None:
    await client.post("/api/memory", json={"text": "Weekend hiking on the ridge", "tag": "user_input"})
    await client.post("/api/memory", json={"text": "Favourite latte order"})

    response = await client.post("/api/memory/search", json={"query": "mountain trail"})
    assert response.status_code == 200
    body = response.json()
    assert not body["degraded"]
    assert [item["record"]["text"] for item in body["items"]] == ["Weekend hiking on the ridge"]


@pytest.mark.anyio
async def test_update_missing_memory_returns_404(client) -> None:
    response = await client.patch("/api/memory/12345", json={"text": "x", "tag": "manual"})
    assert response.status_code == 404


@pytest.mark.anyio
async def test_invalid_tag_rejected(client) -> None:
    response = await client.post("/api/memory", json={"text": "x", "tag": "bad tag!"})
    assert response.status_code == 422


@pytest.mark.anyio
async def test_embedding_outage_returns_503(client, embedder, monkeypatch) -> None:
    async def offline(texts):
        raise EmbeddingUnavailable("provider offline")

    monkeypatch.setattr(embedder, "embed_texts", offline)

    response = await client.post("/api/memory", json={"text": "cannot embed this"})

    assert response.status_code == 503
    assert (await client.get("/api/memory/count")).json() == {"count": 0}


@pytest.mark.anyio
async def test_search_with_session_leaves_out_live_window(client) -> None:
    session_id = (await client.post("/api/chat/session", json={})).json()["id"]
    await client.post(
        f"/api/chat/{session_id}/messages",
        json={"role": "user", "content": "My espresso machine broke", "remember": True},
    )

    scoped = await client.post(
        "/api/memory/search", json={"query": "coffee", "session_id": session_id}
    )
    body = scoped.json()
    assert body["items"] == []
    assert body["exclude_rounds"] == 4

    unscoped = (await client.post("/api/memory/search", json={"query": "coffee"})).json()
    assert [item["record"]["text"] for item in unscoped["items"]] == ["My espresso machine broke"]
    assert unscoped["exclude_rounds"] == 0
