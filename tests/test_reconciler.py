import asyncio

import anyio
import httpx
import pytest

from tapmcp.reconciler import SessionCredentialError, is_initialize_request, replay_body
from tests.mcp_helpers import (
    AUTH_TOKEN,
    _build_mcp_app,
    _build_reconciler,
    initialize_request,
    mcp_headers,
    tool_call,
)


def _async_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


def test_is_initialize_request() -> None:
    assert is_initialize_request(initialize_request())
    assert is_initialize_request([tool_call("echo"), initialize_request()])
    assert not is_initialize_request(tool_call("echo"))
    assert not is_initialize_request("initialize")


@pytest.mark.asyncio
async def test_replay_body_returns_buffered_body_first() -> None:
    async def receive():
        return {"type": "http.disconnect"}

    replay = replay_body(b'{"a": 1}', receive)

    assert await replay() == {"type": "http.request", "body": b'{"a": 1}', "more_body": False}
    assert await replay() == {"type": "http.disconnect"}


@pytest.mark.asyncio
async def test_concurrent_requests_for_unknown_session_share_one_entry() -> None:
    reconciler, store, factory = _build_reconciler()
    app = _build_mcp_app(reconciler, with_lifespan=False)

    async with reconciler.run():
        async with _async_client(app) as client:
            responses = await asyncio.gather(
                *[
                    client.post(
                        "/mcp",
                        json=tool_call("echo", {"text": f"call-{index}"}, request_id=index + 10),
                        headers=mcp_headers("shared-session"),
                    )
                    for index in range(5)
                ]
            )

            assert [response.status_code for response in responses] == [200] * 5
            texts = sorted(response.json()["result"]["content"][0]["text"] for response in responses)
            assert texts == sorted(f"echo: call-{index}" for index in range(5))
            assert store.ids() == ["shared-session"]
            assert len(factory.tokens) == 1


@pytest.mark.asyncio
async def test_session_evicted_after_ttl() -> None:
    reconciler, store, _ = _build_reconciler(session_ttl=0.05)
    app = _build_mcp_app(reconciler, with_lifespan=False)

    async with reconciler.run():
        async with _async_client(app) as client:
            response = await client.post(
                "/mcp",
                json=tool_call("echo", {"text": "x"}),
                headers=mcp_headers("short-lived"),
            )
            assert response.status_code == 200
            assert store.ids() == ["short-lived"]

            await anyio.sleep(0.3)

            assert len(store) == 0


@pytest.mark.asyncio
async def test_evicted_session_is_rebuilt_on_next_request() -> None:
    reconciler, store, factory = _build_reconciler(session_ttl=0.05)
    app = _build_mcp_app(reconciler, with_lifespan=False)

    async with reconciler.run():
        async with _async_client(app) as client:
            await client.post("/mcp", json=tool_call("echo", {"text": "a"}), headers=mcp_headers("comeback"))
            await anyio.sleep(0.3)

            response = await client.post(
                "/mcp",
                json=tool_call("echo", {"text": "b"}),
                headers=mcp_headers("comeback"),
            )

            assert response.status_code == 200
            assert response.headers["mcp-session-id"] == "comeback"
            assert len(factory.tokens) == 2


@pytest.mark.asyncio
async def test_invalid_session_id_is_replaced() -> None:
    reconciler, store, _ = _build_reconciler()
    app = _build_mcp_app(reconciler, with_lifespan=False)

    async with reconciler.run():
        async with _async_client(app) as client:
            response = await client.post(
                "/mcp",
                json=tool_call("echo", {"text": "x"}),
                headers=mcp_headers("has space"),
            )

            assert response.status_code == 200
            session_id = response.headers["mcp-session-id"]
            assert session_id != "has space"
            assert store.ids() == [session_id]


@pytest.mark.asyncio
async def test_close_session_reports_unknown_ids() -> None:
    reconciler, _, _ = _build_reconciler()

    async with reconciler.run():
        assert await reconciler.close_session("never-opened") is False
        assert await reconciler.get_session(None) is None


@pytest.mark.asyncio
async def test_handle_post_requires_running_reconciler() -> None:
    reconciler, store, _ = _build_reconciler()
    app = _build_mcp_app(reconciler, with_lifespan=False)

    async with _async_client(app) as client:
        response = await client.post("/mcp", json=tool_call("echo"), headers=mcp_headers("offline"))

    assert response.status_code == 500
    assert len(store) == 0


@pytest.mark.asyncio
async def test_get_waits_for_pending_bootstrap() -> None:
    reconciler, store, _ = _build_reconciler(bootstrap_timeout=0.05)
    app = _build_mcp_app(reconciler, with_lifespan=False)

    async with reconciler.run():
        pending = await store.add_if_absent(reconciler._new_session("pending", AUTH_TOKEN))
        async with _async_client(app) as client:
            response = await client.get(
                "/mcp",
                headers={"Authorization": f"Bearer {AUTH_TOKEN}", "mcp-session-id": "pending"},
            )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == -32603
        assert not pending.ready.is_set()


@pytest.mark.asyncio
async def test_get_on_failed_bootstrap_is_500() -> None:
    reconciler, store, _ = _build_reconciler()
    app = _build_mcp_app(reconciler, with_lifespan=False)

    async with reconciler.run():
        failed = await store.add_if_absent(reconciler._new_session("broken", AUTH_TOKEN))
        failed.failed = True
        failed.ready.set()
        async with _async_client(app) as client:
            response = await client.get(
                "/mcp",
                headers={"Authorization": f"Bearer {AUTH_TOKEN}", "mcp-session-id": "broken"},
            )

        assert response.status_code == 500


@pytest.mark.asyncio
async def test_check_credential_refuses_other_token() -> None:
    reconciler, _, _ = _build_reconciler()
    session = reconciler._new_session("owned", AUTH_TOKEN)

    reconciler.check_credential(session, AUTH_TOKEN)
    with pytest.raises(SessionCredentialError):
        reconciler.check_credential(session, "intruder")
    await session.close()


@pytest.mark.asyncio
async def test_joining_bootstrap_with_other_credential_is_refused() -> None:
    reconciler, store, factory = _build_reconciler()
    app = _build_mcp_app(reconciler, with_lifespan=False)

    async with reconciler.run():
        async with _async_client(app) as client:
            owner, intruder = await asyncio.gather(
                client.post("/mcp", json=tool_call("whoami"), headers=mcp_headers("contested")),
                client.post("/mcp", json=tool_call("whoami"), headers=mcp_headers("contested", token="intruder")),
            )

            statuses = sorted([owner.status_code, intruder.status_code])
            assert statuses == [200, 401]
            assert store.ids() == ["contested"]
            assert len(factory.tokens) == 1
