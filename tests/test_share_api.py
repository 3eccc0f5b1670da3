"""
Tests for the share and normalise services.

Tests:
- POST /share stores a state under a content-derived id
- GET /l/{id} serves the stored state, inlined in index.html when present
- POST /normalise returns canonical config text
- ShareStore expiry and the HTML-safe state encoding

Run tests:
    pytest tests/test_share_api.py -v
"""

import orjson
import pytest
from fastapi.testclient import TestClient

from lab.share import LabState, ShareStore, encode_state, render_index, share_id
from main import create_app

INDEX_HTML = """<html><script>
// LAB START
window.LAB_STATE = null;
// LAB END
</script></html>
"""


@pytest.fixture
def www_client(lab_config, tmp_path):
    www = tmp_path / "www"
    www.mkdir()
    (www / "index.html").write_text(INDEX_HTML, encoding="utf-8")
    lab_config.www_dir = www
    with TestClient(create_app(lab_config)) as test_client:
        yield test_client


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# ============= Encoding =============


class TestEncoding:
    def test_state_is_escaped_for_html(self):
        body = encode_state(LabState(config="</script>&", input="a\u2028b"))

        assert b"<" not in body
        assert b">" not in body
        assert b"&" not in body
        assert b"\\u2028" in body
        assert orjson.loads(body) == {"config": "</script>&", "input": "a\u2028b"}

    def test_share_id_is_stable_and_url_safe(self):
        body = encode_state(LabState(config="c", input="i"))

        key = share_id(body)

        assert key == share_id(encode_state(LabState(input="i", config="c")))
        assert len(key) == 24
        assert "/" not in key and "+" not in key

    def test_render_index_replaces_marked_region(self):
        html = render_index(INDEX_HTML, b'{"config":"","input":""}')

        assert "LAB START" not in html
        assert "LAB END" not in html
        assert '<script>\n{"config":"","input":""}\n</script>' in html

    def test_render_index_without_markers_is_unchanged(self):
        assert render_index("<html></html>", b"{}") == "<html></html>"


class TestShareStore:
    def test_records_expire(self):
        clock = FakeClock()
        store = ShareStore(ttl=10, clock=clock)
        key = store.save(LabState(config="a"))

        clock.now += 9
        assert store.get(key) is not None

        clock.now += 1
        assert store.get(key) is None

    def test_writes_purge_expired_records(self):
        clock = FakeClock()
        store = ShareStore(ttl=10, clock=clock)
        store.save(LabState(config="a"))

        clock.now += 20
        store.save(LabState(config="b"))

        assert len(store) == 1

    def test_same_state_same_id(self):
        store = ShareStore()

        assert store.save(LabState(config="x")) == store.save(LabState(config="x"))
        assert len(store) == 1


# ============= HTTP =============


class TestShareEndpoints:
    def test_share_then_open_without_client_dir(self, client):
        response = client.post("/share", json={"config": "pipeline: {}", "input": "hi"})

        assert response.status_code == 200
        key = response.text
        assert len(key) == 24

        opened = client.get(f"/l/{key}")
        assert opened.status_code == 200
        assert opened.json() == {"config": "pipeline: {}", "input": "hi"}

    def test_missing_fields_default_to_empty(self, client):
        key = client.post("/share", json={}).text

        assert client.get(f"/l/{key}").json() == {"config": "", "input": ""}

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'{"config": 1}'])
    def test_unparseable_body_is_rejected(self, client, body):
        response = client.post("/share", content=body)

        assert response.status_code == 400
        assert response.json()["detail"] == "Failed to parse body"

    def test_unknown_id_is_not_found(self, client):
        response = client.get("/l/doesnotexist")

        assert response.status_code == 404

    def test_open_inlines_state_in_index(self, www_client):
        key = www_client.post("/share", json={"config": "a: 1", "input": "<b>"}).text

        response = www_client.get(f"/l/{key}")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "// LAB START" not in response.text
        assert '{"config":"a: 1","input":"\\u003cb\\u003e"}' in response.text

    def test_index_is_served_at_root(self, www_client):
        response = www_client.get("/")

        assert response.status_code == 200
        assert "LAB START" in response.text

    def test_unreadable_index_is_bad_gateway(self, lab_config, tmp_path):
        www = tmp_path / "broken"
        (www / "index.html").mkdir(parents=True)
        lab_config.www_dir = www

        with TestClient(create_app(lab_config)) as test_client:
            key = test_client.post("/share", json={"config": "a"}).text
            response = test_client.get(f"/l/{key}")

        assert response.status_code == 502


class TestNormaliseEndpoint:
    def test_normalise_returns_canonical_text(self, client):
        response = client.post("/normalise", content=b"pipeline: {}")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text.startswith("input:\n  type: lab\n")

        again = client.post("/normalise", content=response.text.encode("utf-8"))
        assert again.text == response.text

    def test_invalid_config_is_bad_request(self, client):
        response = client.post("/normalise", content=b"pipeline:\n  processors:\n    - type: nope\n")

        assert response.status_code == 400
        assert response.text == "processor type 'nope' not recognised"

    def test_non_utf8_body_is_bad_request(self, client):
        response = client.post("/normalise", content=b"\xff\xfe")

        assert response.status_code == 400
