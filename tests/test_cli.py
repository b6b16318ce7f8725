import cli


class _Resp:
    def __init__(self, payload, ok=True):
        self._payload = payload
        self.ok = ok

    def json(self):
        return self._payload


def test_reconcile_posts_to_assembly_endpoint(monkeypatch, capsys):
    calls = []

    def fake_post(url, **kwargs):
        calls.append((url, kwargs))
        return _Resp({"ok": True, "branch": "present"})

    monkeypatch.setattr(cli.requests, "post", fake_post)

    rc = cli.main(["--api", "http://api/", "--user", "u", "--password", "p", "reconcile", "--namespace", "ns", "--name", "c"])

    assert rc == 0
    url, kwargs = calls[0]
    assert url == "http://api/assemblies/ns/c/reconcile"
    assert kwargs["auth"] == ("u", "p")
    assert '"branch": "present"' in capsys.readouterr().out


def test_reconcile_all_fails_when_any_assembly_failed(monkeypatch):
    monkeypatch.setattr(cli.requests, "post", lambda url, **kw: _Resp([{"ok": True}, {"ok": False}]))
    assert cli.main(["reconcile-all", "--namespace", "*"]) == 1


def test_events_passes_filters(monkeypatch):
    seen = {}

    def fake_get(url, params=None, **kwargs):
        seen["url"], seen["params"] = url, params
        return _Resp([])

    monkeypatch.setattr(cli.requests, "get", fake_get)
    assert cli.main(["events", "--limit", "5", "--assembly", "c"]) == 0
    assert seen == {"url": "http://localhost:8000/events", "params": {"limit": 5, "assembly": "c"}}


def test_reconcile_all_sends_selector(monkeypatch):
    sent = {}

    def fake_post(url, json=None, **kwargs):
        sent["url"], sent["json"] = url, json
        return _Resp([{"ok": True}])

    monkeypatch.setattr(cli.requests, "post", fake_post)
    assert cli.main(["reconcile-all", "--namespace", "ns", "--selector", "env=prod, team"]) == 0
    assert sent["url"] == "http://localhost:8000/reconcile-all"
    assert sent["json"] == {"namespace": "ns", "selector": {"env": "prod", "team": None}}
