import json
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

import main
from imgrouter.api.schemas import Provider
from imgrouter.core.errors import UpstreamError
from imgrouter.core.models import CanonicalResult, ImageReference

ACCESS_TOKEN = "gateway-secret"
GITEE_KEY = "A1b2C3d4E5" * 4
CHAT_BODY = {
    "model": "z-image-turbo",
    "messages": [{"role": "user", "content": "a red fox"}],
}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(main.settings, "db_path", str(tmp_path / "imgrouter.db"))
    monkeypatch.setattr(main.settings, "keys_yaml", str(tmp_path / "missing.yaml"))
    monkeypatch.setattr(main.settings, "access_token", ACCESS_TOKEN)
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {ACCESS_TOKEN}"}


def _fake_generate(client: TestClient, monkeypatch, provider: Provider, **kwargs) -> AsyncMock:
    adapter = client.app.state.dispatcher.adapter_for(provider)
    generate = AsyncMock(**kwargs)
    monkeypatch.setattr(adapter, "generate", generate)
    return generate


class TestGatewayAuth:
    def test_missing_authorization(self, client: TestClient) -> None:
        resp = client.post("/v1/chat/completions", json=CHAT_BODY)
        assert resp.status_code == 401

    def test_unrecognised_key(self, client: TestClient) -> None:
        resp = client.post(
            "/v1/chat/completions", json=CHAT_BODY,
            headers={"Authorization": "Bearer not-a-real-key"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["type"] == "invalid_api_key"

    def test_pool_mode_with_empty_pool(self, client: TestClient, admin_headers: dict) -> None:
        resp = client.post("/v1/chat/completions", json=CHAT_BODY, headers=admin_headers)
        assert resp.status_code == 503
        assert resp.json()["error"]["type"] == "no_key_available"


class TestGeneration:
    def test_direct_key_json_reply(self, client: TestClient, monkeypatch) -> None:
        generate = _fake_generate(client, monkeypatch, Provider.GITEE, return_value=CanonicalResult(
            provider=Provider.GITEE,
            image_references=[ImageReference.url("https://g/1.png"), ImageReference.b64("QUJD")],
        ))

        resp = client.post(
            "/v1/chat/completions", json=CHAT_BODY,
            headers={"Authorization": f"Bearer {GITEE_KEY}"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["object"] == "chat.completion"
        assert body["model"] == "z-image-turbo"
        assert body["choices"][0]["message"]["content"] == (
            "![Generated Image](https://g/1.png)\n\n"
            "![Generated Image](data:image/png;base64,QUJD)"
        )
        credential, request = generate.await_args.args
        assert credential == GITEE_KEY
        assert request.prompt == "a red fox"
        assert request.model_hint == "z-image-turbo"

    def test_pooled_stream_reply(
        self, client: TestClient, admin_headers: dict, monkeypatch
    ) -> None:
        resp = client.post(
            "/api/keys", json={"name": "g", "value": GITEE_KEY}, headers=admin_headers,
        )
        assert resp.status_code == 201
        generate = _fake_generate(client, monkeypatch, Provider.GITEE, return_value=CanonicalResult(
            provider=Provider.GITEE, image_references=[],
        ))

        resp = client.post(
            "/v1/chat/completions", json={**CHAT_BODY, "stream": True}, headers=admin_headers,
        )

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = [line[len("data: "):] for line in resp.text.split("\n\n") if line]
        assert events[-1] == "[DONE]"
        first, last = json.loads(events[0]), json.loads(events[1])
        assert first["choices"][0]["delta"]["content"] == "图片生成失败"
        assert last["choices"][0]["finish_reason"] == "stop"
        assert generate.await_args.args[0] == GITEE_KEY

        stats = client.get("/api/stats", headers=admin_headers).json()
        assert stats["total_usage"] == 1

    def test_upstream_error_is_surfaced(self, client: TestClient, monkeypatch) -> None:
        _fake_generate(client, monkeypatch, Provider.GITEE, side_effect=UpstreamError(
            "Gitee", "Gitee API Error (429): slow down", upstream_status=429, body="slow down",
        ))

        resp = client.post(
            "/v1/chat/completions", json=CHAT_BODY,
            headers={"Authorization": f"Bearer {GITEE_KEY}"},
        )

        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["provider"] == "Gitee"
        assert error["upstream_status"] == 429
        assert "slow down" in error["message"]


class TestAdminApi:
    def test_requires_token(self, client: TestClient) -> None:
        assert client.get("/api/keys").status_code == 401
        assert client.get("/api/auth/check").json() == {"needsAuth": True}

    def test_login(self, client: TestClient) -> None:
        assert client.post("/api/auth/login", json={"token": "wrong"}).status_code == 401
        assert client.post("/api/auth/login", json={"token": ACCESS_TOKEN}).json()["success"]

    def test_keys_are_listed_masked(self, client: TestClient, admin_headers: dict) -> None:
        client.post("/api/keys", json={"name": "g", "value": GITEE_KEY}, headers=admin_headers)

        [key] = client.get("/api/keys", headers=admin_headers).json()
        assert key["provider"] == "Gitee"
        assert key["value"] == f"{GITEE_KEY[:6]}...{GITEE_KEY[-4:]}"
        assert GITEE_KEY not in json.dumps(key)

    def test_ban_unban_and_weight(self, client: TestClient, admin_headers: dict) -> None:
        key_id = client.post(
            "/api/keys", json={"name": "g", "value": GITEE_KEY}, headers=admin_headers,
        ).json()["id"]

        assert client.post(f"/api/keys/{key_id}/ban", headers=admin_headers).json()["success"]
        [key] = client.get("/api/keys", headers=admin_headers).json()
        assert key["suspended"] is True

        client.post(f"/api/keys/{key_id}/unban", headers=admin_headers)
        resp = client.put(
            f"/api/keys/{key_id}/weight", json={"rotation_weight": 0}, headers=admin_headers,
        )
        assert resp.status_code == 422
        resp = client.put(
            f"/api/keys/{key_id}/weight", json={"rotation_weight": 3}, headers=admin_headers,
        )
        assert resp.json()["rotation_weight"] == 3

        [key] = client.get("/api/keys", headers=admin_headers).json()
        assert key["suspended"] is False
        assert key["rotation_weight"] == 3

    def test_unknown_key_id(self, client: TestClient, admin_headers: dict) -> None:
        resp = client.delete("/api/keys/missing", headers=admin_headers)
        assert resp.status_code == 404

    def test_import_and_export(self, client: TestClient, admin_headers: dict) -> None:
        content = f"keys:\n  - name: g\n    value: {GITEE_KEY}\n    rotation_weight: 2\n  - name: empty\n"
        resp = client.post("/api/keys/import", json={"content": content}, headers=admin_headers)
        assert resp.json()["imported_keys"] == 1
        assert len(resp.json()["errors"]) == 1

        exported = client.get("/api/keys/export", headers=admin_headers)
        assert exported.headers["content-type"].startswith("text/yaml")
        assert GITEE_KEY in exported.text
        assert "rotation_weight: 2" in exported.text

    def test_settings_and_model_sizes(self, client: TestClient, admin_headers: dict) -> None:
        resp = client.put(
            "/api/settings", json={"active_provider": "Nope"}, headers=admin_headers,
        )
        assert resp.status_code == 422

        client.put("/api/settings", json={"active_provider": "Gitee"}, headers=admin_headers)
        client.put(
            "/api/model-sizes", json={"Gitee": {"textToImage": "512x512"}}, headers=admin_headers,
        )

        settings = client.get("/api/settings", headers=admin_headers).json()
        assert settings["active_provider"] == "Gitee"
        assert "model_sizes" not in settings
        sizes = client.get("/api/model-sizes", headers=admin_headers).json()
        assert sizes == {"Gitee": {"textToImage": "512x512", "imageEdit": ""}}

    def test_providers(self, client: TestClient, admin_headers: dict) -> None:
        providers = client.get("/api/providers", headers=admin_headers).json()
        assert {p["name"] for p in providers} == {"VolcEngine", "Gitee", "ModelScope"}
        assert next(p for p in providers if p["name"] == "ModelScope")["async_generation"] is True


class TestStreamFlag:
    def test_null_stream_is_accepted(self, client: TestClient) -> None:
        resp = client.post(
            "/v1/chat/completions", json={**CHAT_BODY, "stream": None},
            headers={"Authorization": "Bearer not-a-real-key"},
        )
        assert resp.status_code == 401

    @pytest.mark.parametrize("stream", ["true", 1, None])
    def test_only_literal_true_streams(self, client: TestClient, monkeypatch, stream) -> None:
        _fake_generate(client, monkeypatch, Provider.GITEE, return_value=CanonicalResult(
            provider=Provider.GITEE, image_references=[ImageReference.url("https://g/1.png")],
        ))

        resp = client.post(
            "/v1/chat/completions", json={**CHAT_BODY, "stream": stream},
            headers={"Authorization": f"Bearer {GITEE_KEY}"},
        )

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/json")
        assert resp.json()["object"] == "chat.completion"


class TestCors:
    @pytest.mark.parametrize("path", ["/v1/chat/completions", "/api/keys"])
    def test_preflight(self, client: TestClient, path: str) -> None:
        resp = client.options(path, headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Authorization, Content-Type",
        })
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"
        assert "POST" in resp.headers["access-control-allow-methods"]

    def test_error_reply_carries_allow_origin(self, client: TestClient) -> None:
        resp = client.post(
            "/v1/chat/completions", json=CHAT_BODY,
            headers={"Origin": "http://localhost:3000", "Authorization": "Bearer not-a-real-key"},
        )
        assert resp.status_code == 401
        assert resp.headers["access-control-allow-origin"] == "*"


def test_api_timeout_setting_reaches_adapters(client: TestClient, admin_headers: dict) -> None:
    dispatcher = client.app.state.dispatcher
    assert dispatcher.adapter_for(Provider.GITEE).timeout == main.settings.request_timeout

    resp = client.put("/api/settings", json={"api_timeout": 30}, headers=admin_headers)
    assert resp.status_code == 200

    assert client.get("/api/settings", headers=admin_headers).json()["api_timeout"] == 30
    assert {a.timeout for a in dispatcher.adapters.values()} == {30}

    resp = client.put("/api/settings", json={"api_timeout": 0}, headers=admin_headers)
    assert resp.status_code == 422
    assert dispatcher.adapter_for(Provider.GITEE).timeout == 30


def test_health(client: TestClient) -> None:
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["keys"] == 0
