# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""HTTP API tests for the Wendao service.

These tests run the FastAPI app with the LLM client in stub mode:
- Health, metrics and debug endpoints
- Game lifecycle endpoints and error mapping
- Save export/import and settings endpoints
"""

import json

import pytest

from wendao.config import get_settings
from wendao.metrics import disable_metrics_collector, init_metrics_collector


def error_type(response):
    return response.json()["detail"]["error"]["type"]


def start_game(client, origin="sect"):
    response = client.post("/game/start", json={"originId": origin})
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def settings_override(client):
    """Replace the settings dependency for a single test."""
    from wendao.main import app

    def apply(**updates):
        settings = get_settings().model_copy(update=updates)
        app.dependency_overrides[get_settings] = lambda: settings

    yield apply
    app.dependency_overrides.pop(get_settings, None)


class TestOperationalEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "wendao-test"
        assert data["llm_configured"] is True

    def test_request_id_header(self, client):
        response = client.get("/health", headers={"X-Trace-Id": "trace-123"})
        assert response.headers["X-Request-Id"] == "trace-123"

    def test_metrics_disabled(self, client):
        response = client.get("/metrics")
        assert response.status_code == 404

    def test_metrics_enabled(self, client, settings_override):
        settings_override(enable_metrics=True)
        init_metrics_collector().reset()
        try:
            start_game(client)
            response = client.get("/metrics")
            assert response.status_code == 200
            data = response.json()
            assert data["schema_conformance"]["strict_parses"] == 1
            assert "turn" in data["latencies"]
        finally:
            disable_metrics_collector()

    def test_debug_parse_disabled(self, client):
        response = client.post("/debug/parse", json={"llm_response": "{}"})
        assert response.status_code == 404

    def test_debug_parse(self, client, settings_override):
        settings_override(enable_debug_endpoints=True)
        response = client.post("/debug/parse", json={
            "llm_response": '```json\n{"narrative": "雪落", "choices": ["赏雪"]}\n```'
        })
        assert response.status_code == 200
        data = response.json()
        assert data["is_valid"] is True
        assert data["stage"] == "strict"
        assert data["result"]["narrative"] == "雪落"
        assert data["result"]["choices"] == ["赏雪"]

    def test_openapi_docs(self, client):
        response = client.get("/openapi.json")
        assert response.status_code == 200
        paths = response.json()["paths"]
        assert "/game/action" in paths
        assert "/game/import" in paths


class TestGameEndpoints:

    def test_origins(self, client):
        response = client.get("/origins")
        assert response.status_code == 200
        ids = [location["id"] for location in response.json()]
        assert ids == ["sect", "valley", "tomb", "city", "custom"]

    def test_initial_view(self, client):
        data = client.get("/game").json()
        assert data["started"] is False
        assert data["phase"] == "idle"
        assert data["history"] == []
        assert data["character"]["realm"] == "凡人"
        assert data["character"]["maxHealth"] == 100

    def test_start_and_play(self, client):
        opening = start_game(client)
        assert opening["succeeded"] is True
        assert opening["narrative"].startswith("[STUB]")
        assert opening["choices"]

        response = client.post("/game/action", json={"action": "闭关修炼"})
        assert response.status_code == 200
        turn = response.json()
        assert turn["character"]["cultivation"] == 10
        assert turn["gameOver"] is False

        view = client.get("/game").json()
        assert [entry["role"] for entry in view["history"]] == [
            "system-notice", "narrator", "player", "narrator"
        ]

    def test_unknown_origin(self, client):
        response = client.post("/game/start", json={"originId": "moon"})
        assert response.status_code == 400
        assert error_type(response) == "invalid_action"

    def test_action_before_start(self, client):
        response = client.post("/game/action", json={"action": "打坐"})
        assert response.status_code == 400
        assert error_type(response) == "invalid_action"

    def test_blank_action(self, client):
        start_game(client)
        response = client.post("/game/action", json={"action": "   "})
        assert response.status_code == 400

    def test_missing_action_field(self, client):
        response = client.post("/game/action", json={})
        assert response.status_code == 422

    def test_action_after_game_over(self, client):
        start_game(client)
        client.orchestrator.session.terminal = True

        response = client.post("/game/action", json={"action": "再战"})
        assert response.status_code == 409
        assert error_type(response) == "game_over"

        hint = client.post("/game/hint")
        assert hint.status_code == 200
        assert hint.json()["gameOver"] is True

    def test_busy_session_is_rejected(self, client):
        start_game(client)
        client.orchestrator.session.busy = True
        try:
            response = client.post("/game/action", json={"action": "出关"})
            assert response.status_code == 409
            assert error_type(response) == "session_busy"
        finally:
            client.orchestrator.session.busy = False

    def test_identify_requires_inventory_item(self, client):
        start_game(client)
        response = client.post("/game/identify", json={"itemName": "仙帝遗宝"})
        assert response.status_code == 400

    def test_identify_item(self, client):
        start_game(client)
        client.orchestrator.session.character.inventory.append("古朴玉佩")
        response = client.post("/game/identify", json={"itemName": "古朴玉佩"})
        assert response.status_code == 200
        assert response.json()["succeeded"] is True

    def test_new_game(self, client):
        start_game(client)
        response = client.post("/game/new")
        assert response.status_code == 200
        assert response.json()["started"] is False
        assert response.json()["history"] == []


class TestSaveEndpoints:

    def test_export_requires_game(self, client):
        assert client.get("/game/export").status_code == 400

    def test_export_and_import(self, client):
        start_game(client)
        client.post("/game/action", json={"action": "闭关修炼"})

        exported = client.get("/game/export")
        assert exported.status_code == 200
        assert "attachment" in exported.headers["content-disposition"]
        assert "xiuxian_save_" in exported.headers["content-disposition"]
        data = json.loads(exported.text)
        assert data["settings"]["apiKey"] == ""
        assert len(data["history"]) == 4

        client.post("/game/new")
        imported = client.post("/game/import", json={"content": exported.text})

        assert imported.status_code == 200
        view = imported.json()
        assert view["started"] is True
        assert len(view["history"]) == 4
        assert view["character"]["cultivation"] == 10

    def test_import_invalid(self, client):
        response = client.post("/game/import", json={"content": "{broken"})
        assert response.status_code == 400
        assert error_type(response) == "invalid_save"


class TestSettingsEndpoints:

    def test_get_settings_hides_key(self, client):
        data = client.get("/settings").json()
        assert data["apiKeySet"] is True
        assert data["stubMode"] is True
        assert "apiKey" not in data
        assert data["model"] == "test-model"

    def test_update_settings(self, client):
        response = client.put("/settings", json={
            "baseUrl": "https://api.deepseek.com/chat/completions",
            "apiKey": "sk-new-key",
            "model": "deepseek-chat"
        })
        assert response.status_code == 200
        data = response.json()
        assert data["baseUrl"] == "https://api.deepseek.com"
        assert data["model"] == "deepseek-chat"
        assert "sk-new-key" not in response.text

    def test_update_settings_invalid_url(self, client):
        response = client.put("/settings", json={"baseUrl": "not-a-url", "apiKey": "k", "model": "m"})
        assert response.status_code == 422

    def test_connection_test_requires_key(self, client):
        response = client.post("/settings/test", json={"apiKey": ""})
        assert response.status_code == 200
        assert response.json() == {"success": False, "message": "API Key 不能为空"}
