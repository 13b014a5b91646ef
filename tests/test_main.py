import server


class _DummyUvicorn:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def run(self, app, **kwargs) -> None:
        self.calls.append((app, kwargs))


def test_main_serves_app_with_local_defaults(monkeypatch) -> None:
    dummy = _DummyUvicorn()
    app = object()
    monkeypatch.setattr(server, "create_app", lambda: app)
    monkeypatch.setattr(server, "uvicorn", dummy)
    monkeypatch.delenv("MCP_HOST", raising=False)
    monkeypatch.delenv("MCP_PORT", raising=False)

    server.main()

    assert dummy.calls == [(app, {"host": "127.0.0.1", "port": 8000})]


def test_main_reads_host_and_port_from_env(monkeypatch) -> None:
    dummy = _DummyUvicorn()
    app = object()
    monkeypatch.setattr(server, "create_app", lambda: app)
    monkeypatch.setattr(server, "uvicorn", dummy)
    monkeypatch.setenv("MCP_HOST", "0.0.0.0")
    monkeypatch.setenv("MCP_PORT", "9100")

    server.main()

    assert dummy.calls == [(app, {"host": "0.0.0.0", "port": 9100})]
