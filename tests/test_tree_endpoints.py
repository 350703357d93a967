import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from catalog import main
from tests.factories.category_node import CategoryNodeFactory


async def create_node(client: AsyncClient, name: str, parent_id: int | None = None, active: bool = True) -> dict:
    response = await client.post("/api/tree", json={"name": name, "parentId": parent_id, "active": active})
    assert response.status_code == 201, response.text
    return response.json()


async def settle(components, clock) -> None:
    """Run every scheduled flush and let the debounce window lapse."""
    await components.worker.join()
    clock.advance(10 * components.settings.debounce_window_seconds)


async def job_scopes(client: AsyncClient) -> list[dict]:
    response = await client.get("/api/cache/jobs")
    assert response.status_code == 200
    return [job["scope"] for job in response.json()]


@pytest.mark.asyncio
async def test_get_empty_tree(client: AsyncClient):
    response = await client.get("/api/tree")
    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_create_root_node(client: AsyncClient):
    response = await client.post("/api/tree", json={"name": "Electronics", "parentId": None})
    assert response.status_code == 201

    data = response.json()
    assert data["name"] == "Electronics"
    assert data["parentId"] is None
    assert data["path"] == f"/{data['id']}"
    assert data["depth"] == 0 and data["position"] == 1


@pytest.mark.asyncio
async def test_create_under_missing_parent(client: AsyncClient):
    response = await client.post("/api/tree", json={"name": "Orphan", "parentId": 999})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_get_tree_nests_children_in_order(client: AsyncClient, components, clock):
    electronics = await create_node(client, "Electronics")
    phones = await create_node(client, "Phones", electronics["id"])
    laptops = await create_node(client, "Laptops", electronics["id"], active=False)
    await settle(components, clock)

    response = await client.get("/api/tree")
    assert response.status_code == 200
    [tree] = response.json()
    assert [child["id"] for child in tree["children"]] == [phones["id"], laptops["id"]]

    response = await client.get("/api/tree", params={"activeOnly": "true"})
    [tree] = response.json()
    assert [child["id"] for child in tree["children"]] == [phones["id"]]


@pytest.mark.asyncio
async def test_node_navigation(client: AsyncClient):
    electronics = await create_node(client, "Electronics")
    phones = await create_node(client, "Phones", electronics["id"])
    cases = await create_node(client, "Cases", phones["id"])

    response = await client.get(f"/api/tree/nodes/{cases['id']}/breadcrumbs")
    assert [node["name"] for node in response.json()] == ["Electronics", "Phones", "Cases"]

    response = await client.get(f"/api/tree/nodes/{cases['id']}/ancestors")
    assert [node["name"] for node in response.json()] == ["Electronics", "Phones"]

    response = await client.get(f"/api/tree/nodes/{electronics['id']}/descendants")
    assert {node["id"] for node in response.json()} == {phones["id"], cases["id"]}

    response = await client.get(f"/api/tree/nodes/{electronics['id']}/children")
    assert [node["id"] for node in response.json()] == [phones["id"]]

    response = await client.get(f"/api/tree/roots/{electronics['id']}")
    assert response.json()["children"][0]["children"][0]["id"] == cases["id"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path",
    [
        "/api/tree/nodes/999/breadcrumbs",
        "/api/tree/nodes/999/ancestors",
        "/api/tree/nodes/999/descendants",
        "/api/tree/nodes/999/children",
        "/api/tree/roots/999",
    ],
)
async def test_unknown_node_is_404(client: AsyncClient, path: str):
    response = await client.get(path)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_depth_statistics(client: AsyncClient):
    electronics = await create_node(client, "Electronics")
    await create_node(client, "Phones", electronics["id"])
    await create_node(client, "Books", active=False)

    response = await client.get("/api/tree/stats/depth")
    assert response.status_code == 200
    data = response.json()
    assert data["maxDepth"] == 1
    assert data["total"] == 3
    assert data["active"] == 2
    assert data["rootCount"] == 2


@pytest.mark.asyncio
async def test_move_node_with_children(client: AsyncClient):
    """Test moving a node with multiple levels of children."""
    # Root 1
    #   ├── Node A
    #   │   ├── Node A1
    #   │   └── Node A2
    #   └── Node B
    root = await create_node(client, "Root 1")
    node_a = await create_node(client, "Node A", root["id"])
    node_a1 = await create_node(client, "Node A1", node_a["id"])
    await create_node(client, "Node A2", node_a["id"])
    node_b = await create_node(client, "Node B", root["id"])

    response = await client.post("/api/tree/move", json={"sourceId": node_a["id"], "targetId": node_b["id"]})
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["node"]["path"] == f"/{root['id']}/{node_b['id']}/{node_a['id']}"

    response = await client.get(f"/api/tree/nodes/{node_a1['id']}/breadcrumbs")
    assert [node["name"] for node in response.json()] == ["Root 1", "Node B", "Node A", "Node A1"]


@pytest.mark.asyncio
async def test_move_node_under_descendant_is_rejected(client: AsyncClient):
    root = await create_node(client, "Root")
    child = await create_node(client, "Child", root["id"])

    response = await client.post("/api/tree/move", json={"sourceId": root["id"], "targetId": child["id"]})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_reorder_children(client: AsyncClient):
    root = await create_node(client, "Root")
    ids = [(await create_node(client, name, root["id"]))["id"] for name in ("A", "B", "C")]

    response = await client.post("/api/tree/reorder", json={"parentId": root["id"], "orderedIds": ids[::-1]})
    assert response.status_code == 200
    assert [(node["id"], node["position"]) for node in response.json()] == list(zip(ids[::-1], [1, 2, 3]))

    response = await client.post("/api/tree/reorder", json={"parentId": root["id"], "orderedIds": ids[:2]})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_delete_restore_and_force_delete(client: AsyncClient):
    root = await create_node(client, "Root")
    leaf = await create_node(client, "Leaf", root["id"])

    response = await client.delete(f"/api/tree/nodes/{leaf['id']}")
    assert response.status_code == 200 and response.json()["deleted"] is True

    response = await client.post(f"/api/tree/nodes/{leaf['id']}/restore")
    assert response.status_code == 200 and response.json()["deleted"] is False

    response = await client.delete(f"/api/tree/nodes/{root['id']}/force")
    assert response.status_code == 409

    assert (await client.delete(f"/api/tree/nodes/{leaf['id']}/force")).status_code == 200
    assert (await client.delete(f"/api/tree/nodes/{root['id']}/force")).status_code == 200
    assert (await client.get("/api/tree")).json() == []


@pytest.mark.asyncio
async def test_batch_status(client: AsyncClient):
    root = await create_node(client, "Root")
    child = await create_node(client, "Child", root["id"])

    response = await client.post("/api/tree/status", json={"nodeIds": [root["id"], child["id"]], "active": False})
    assert response.status_code == 200
    assert response.json() == {"updated": 2}


@pytest.mark.asyncio
async def test_rejected_delete_leaves_tree_and_cache_alone(client: AsyncClient, components, clock):
    root = await create_node(client, "Electronics")
    await create_node(client, "Phones", root["id"])
    await settle(components, clock)
    before = (await client.get("/api/tree")).json()
    jobs_before = await job_scopes(client)

    response = await client.delete(f"/api/tree/nodes/{root['id']}")

    assert response.status_code == 409
    await components.worker.join()
    assert (await client.get("/api/tree")).json() == before
    assert await job_scopes(client) == jobs_before


@pytest.mark.asyncio
async def test_move_then_edit_flushes_each_root_once(client: AsyncClient, components, clock):
    electronics = await create_node(client, "Electronics")
    phones = await create_node(client, "Phones", electronics["id"])
    await settle(components, clock)
    jobs_before = len(await job_scopes(client))

    gadgets = await create_node(client, "Gadgets")
    response = await client.post("/api/tree/move", json={"sourceId": phones["id"], "targetId": gadgets["id"]})
    assert response.status_code == 200
    response = await client.patch(f"/api/tree/nodes/{electronics['id']}", json={"name": "Consumer Electronics"})
    assert response.status_code == 200
    await components.worker.join()

    # Newest first
    scopes = await job_scopes(client)
    new_jobs = scopes[: len(scopes) - jobs_before]
    assert sorted(scope["affected_root_ids"] for scope in new_jobs) == [[electronics["id"]], [gadgets["id"]]]


@pytest.mark.asyncio
async def test_reads_after_flush_see_committed_writes(client: AsyncClient, components, clock):
    root = await create_node(client, "Electronics")
    await settle(components, clock)
    assert (await client.get(f"/api/tree/roots/{root['id']}")).json()["name"] == "Electronics"

    await client.patch(f"/api/tree/nodes/{root['id']}", json={"name": "Consumer Electronics"})
    await components.worker.join()

    assert (await client.get(f"/api/tree/roots/{root['id']}")).json()["name"] == "Consumer Electronics"
    assert (await client.get("/api/tree")).json()[0]["name"] == "Consumer Electronics"


@pytest.mark.asyncio
async def test_warm_cache_is_idempotent(client: AsyncClient, db_session: AsyncSession):
    electronics = CategoryNodeFactory.root(name="Electronics", position=1)
    phones = CategoryNodeFactory.child_of(electronics, name="Phones", position=1)
    books = CategoryNodeFactory.root(name="Books", position=2)
    await CategoryNodeFactory.persist(db_session, electronics, phones, books)

    response = await client.post("/api/cache/warm", json={"activeOnly": False, "dryRun": True})
    assert response.status_code == 200
    dry_run = response.json()
    assert dry_run["dry_run"] is True
    assert dry_run["node_count"] == 3 and dry_run["root_count"] == 2
    assert (await client.get("/api/cache/info")).json()["cached_entries"] == 0

    first = (await client.post("/api/cache/warm", json={})).json()
    assert first["entry_count"] == dry_run["entry_count"]
    assert first["misses"] == first["entry_count"]

    second = (await client.post("/api/cache/warm", json={})).json()
    assert second["misses"] == 0
    assert second["hits"] == first["hits"] + first["misses"]
    assert second["entry_count"] == first["entry_count"]


@pytest.mark.asyncio
async def test_manual_flush_is_queued_immediately(client: AsyncClient, components):
    root = await create_node(client, "Electronics")
    await client.get("/api/tree")

    response = await client.post("/api/cache/flush", json={"rootIds": [root["id"]]})
    assert response.status_code == 202
    job = response.json()
    assert job["scope"] == {"mode": "root_shard", "affected_root_ids": [root["id"]], "affected_node_ids": []}

    await components.worker.join()
    jobs = (await client.get("/api/cache/jobs")).json()
    assert next(j for j in jobs if j["id"] == job["id"])["state"] == "completed"


@pytest.mark.asyncio
async def test_forced_warm_up_recomputes_everything(client: AsyncClient, db_session: AsyncSession):
    electronics = CategoryNodeFactory.root(name="Electronics", position=1)
    await CategoryNodeFactory.persist(db_session, electronics, CategoryNodeFactory.child_of(electronics, name="Phones"))

    first = (await client.post("/api/cache/warm", json={})).json()
    forced = (await client.post("/api/cache/warm", json={"force": True})).json()

    assert forced["force"] is True
    assert forced["flushed"] >= first["entry_count"]
    assert forced["entry_count"] == first["entry_count"]
    assert forced["misses"] == forced["entry_count"] and forced["hits"] == 0


@pytest.mark.asyncio
async def test_flush_by_node_evicts_single_node_entries(client: AsyncClient, components, clock):
    root = await create_node(client, "Electronics")
    phones = await create_node(client, "Phones", root["id"])
    await settle(components, clock)
    await client.get("/api/tree")
    await client.get(f"/api/tree/nodes/{phones['id']}/breadcrumbs")

    response = await client.post("/api/cache/flush", json={"nodeIds": [phones["id"]]})
    assert response.status_code == 202
    assert response.json()["scope"] == {
        "mode": "single_key",
        "affected_root_ids": [],
        "affected_node_ids": [phones["id"]],
    }

    await components.worker.join()
    cached = await components.cache.cached_keys()
    assert components.cache.breadcrumbs_key(phones["id"]) not in cached
    assert components.cache.tree_key(False) in cached


@pytest.mark.asyncio
async def test_flush_rejects_roots_and_nodes_together(client: AsyncClient):
    response = await client.post("/api/cache/flush", json={"rootIds": [1], "nodeIds": [2]})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_cache_info(client: AsyncClient):
    response = await client.get("/api/cache/info")
    assert response.status_code == 200
    data = response.json()
    assert data["backend"] == "memory"
    assert data["worker_running"] is True
    assert data["debounce_window_seconds"] == pytest.approx(0.05)


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["checks"]["database"]["connected"] is True
    assert data["checks"]["flush_worker"] == {"running": True}


@pytest.mark.asyncio
async def test_metrics_snapshot(client: AsyncClient, components):
    await create_node(client, "Electronics")
    await client.get("/api/tree")
    await components.worker.join()

    response = await client.get("/api/stats/metrics")
    assert response.status_code == 200
    names = {counter["name"] for counter in response.json()["counters"]}
    assert {"mutation_total", "debounce_total", "flush_job_total"} <= names


@pytest.mark.asyncio
async def test_stats_session_requires_redis(client: AsyncClient):
    response = await client.post("/api/stats/start")
    assert response.status_code == 503


def test_serve_runs_the_app_on_the_configured_address(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **options: calls.append((app, options)))

    main.serve()

    assert calls == [
        ("catalog.main:app", {"host": main.settings.host, "port": main.settings.port, "reload": main.settings.debug})
    ]
