import io
import threading

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from archetype_match import config
from archetype_match.api import app
from archetype_match.auth import sign_expiry
from archetype_match.gating import GateVerdict
from archetype_match.identify import IdentificationResult
from archetype_match.pipeline_types import Candidate


client = TestClient(app)


def _jpeg():
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (10, 20, 30)).save(buf, format="JPEG")
    return buf.getvalue()


def _files(n=2, mime="image/jpeg", data=None):
    data = data if data is not None else _jpeg()
    return [("images", (f"face{i}.jpg", data, mime)) for i in range(n)]


def dummy_identify(uploads, ground_truth=None):
    # Minimal deterministic fake result: 7 candidates, head of 5
    ranked = []
    for i in range(7):
        ranked.append(
            Candidate(
                f"arch-{i}",
                recall_score=0.9 - i * 0.05,
                recall_rank=i + 1,
                payload={"archetypeId": f"arch-{i}", "archetypeDetails": {"numistaItemNumber": f"N# {i}"}},
                fusion_score=2.0 - i * 0.1,
                percentile_score=90.0 - i,
            )
        )
    ranks = {"ann_rank": 1, "final_rank": 1} if ground_truth else None
    return IdentificationResult(recall=list(ranked), ranked=ranked, head=ranked[:5], ranks=ranks)


class RecordingIdentify:
    """Wraps dummy_identify and records every call."""

    def __init__(self, before=None):
        self.calls = []
        self.before = before

    def __call__(self, uploads, ground_truth=None):
        if self.before is not None:
            self.before()
        self.calls.append((len(uploads), ground_truth))
        return dummy_identify(uploads, ground_truth)


def failing_identify(uploads, ground_truth=None):
    raise RuntimeError("index unreachable")


@pytest.fixture(autouse=True)
def _quiet_flags(monkeypatch):
    for flag in ("LLM_GATE_ENABLED", "CNN_GATE_ENABLED", "S3_UPLOAD_ENABLED", "HMAC_ENABLED", "LOG_QUERY_METRICS", "LOG_QUERY_AND_EXIT"):
        monkeypatch.setattr(config, flag, False)
    monkeypatch.setattr("archetype_match.api.identify_images", dummy_identify)


def test_health_endpoint():
    assert client.get("/health").json() == {"status": "ok"}
    assert client.post("/health").status_code == 200


def test_match_returns_head(monkeypatch):
    resp = client.post("/match", files=_files())
    assert resp.status_code == 200
    body = resp.json()

    assert body["error"] is False
    assert body["data"]["matches_found_count"] == 7
    assert len(body["data"]["matches"]) == 5
    assert len(body["data"]["image_urls"]) == 2
    first = body["data"]["matches"][0]
    assert first["archetype_id"] == "arch-0"
    assert first["similarity_score"] == "90.00%"


def test_match_requires_two_files():
    resp = client.post("/match", files=_files(n=1))
    assert resp.status_code == 400
    assert resp.json() == {"error": True, "reason": "Two input files are required for matching"}

    assert client.post("/match").status_code == 400


def test_match_rejects_bad_mimetype():
    resp = client.post("/match", files=_files(mime="image/gif"))
    assert resp.status_code == 400
    assert "Invalid file type" in resp.json()["reason"]


def test_match_rejects_large_file(monkeypatch):
    monkeypatch.setattr(config, "MAX_FILE_SIZE", 10)
    resp = client.post("/match", files=_files(data=b"x" * 11))
    assert resp.status_code == 400
    assert "File too large" in resp.json()["reason"]


def test_match_internal_error(monkeypatch):
    monkeypatch.setattr("archetype_match.api.identify_images", failing_identify)
    resp = client.post("/match", files=_files())
    assert resp.status_code == 500
    assert resp.json() == {"error": True, "reason": "Internal server error"}


def test_gate_rejection_returns_code(monkeypatch):
    identify = RecordingIdentify()
    monkeypatch.setattr("archetype_match.api.identify_images", identify)
    monkeypatch.setattr(config, "LLM_GATE_ENABLED", True)
    monkeypatch.setattr(
        "archetype_match.api.validate_images",
        lambda uploads: GateVerdict(error=True, error_code="E001", reason="Not a banknote"),
    )
    resp = client.post("/match", files=_files())
    assert resp.status_code == 400
    assert resp.json() == {"error": True, "reason": "Not a banknote", "error_code": "E001"}
    # retrieval still ran to completion; its result was discarded
    assert identify.calls == [(2, None)]


def test_gate_acceptance_passes_through(monkeypatch):
    monkeypatch.setattr(config, "LLM_GATE_ENABLED", True)
    monkeypatch.setattr("archetype_match.api.validate_images", lambda uploads: GateVerdict(error=False))
    assert client.post("/match", files=_files()).status_code == 200


def test_debug_ranks_for_nn(monkeypatch):
    resp = client.post("/match?nn=0", files=_files())
    assert resp.json()["data"]["ranks"] == {"ann_rank": 1, "final_rank": 1}


def test_log_and_exit_mode(monkeypatch):
    logged = {}

    def fake_log(query_id, gt_id, is_image_normalized, candidates):
        logged.update(query_id=query_id, gt_id=gt_id, normalized=is_image_normalized, n=len(candidates))

    monkeypatch.setattr(config, "LOG_QUERY_METRICS", True)
    monkeypatch.setattr(config, "LOG_QUERY_AND_EXIT", True)
    monkeypatch.setattr("archetype_match.api.log_query", fake_log)
    identify = RecordingIdentify()
    monkeypatch.setattr("archetype_match.api.identify_images", identify)

    resp = client.post("/match?gtid=arch-3", files=_files())
    body = resp.json()

    assert resp.status_code == 200
    assert body["error"] is False
    assert body["query_id"] == logged["query_id"]
    assert logged["gt_id"] == "arch-3"
    assert logged["normalized"] is True
    assert logged["n"] == 7
    assert identify.calls == [(2, None)]


def test_background_upload_scheduled(monkeypatch):
    uploaded = []
    monkeypatch.setattr(config, "S3_UPLOAD_ENABLED", True)
    monkeypatch.setattr("archetype_match.api.upload_images", lambda ups: uploaded.extend(ups))

    resp = client.post("/match", files=_files())

    assert resp.status_code == 200
    assert [u.permalink for u in uploaded] == resp.json()["data"]["image_urls"]


def test_hmac_signature_required(monkeypatch):
    monkeypatch.setattr(config, "HMAC_ENABLED", True)
    monkeypatch.setattr(config, "HMAC_SHARED_SECRET", "s3cret")

    resp = client.post("/match", files=_files())
    assert resp.status_code == 403
    assert resp.json()["error"] is True

    expiry = "4102444800"
    sig = sign_expiry(expiry, "s3cret")
    resp = client.post(f"/match?e={expiry}&s={sig}", files=_files())
    assert resp.status_code == 200


def test_gate_and_identify_run_concurrently(monkeypatch):
    # both sides must reach the barrier; sequential execution would time out
    barrier = threading.Barrier(2, timeout=5)

    def gate(uploads):
        barrier.wait()
        return GateVerdict(error=False)

    identify = RecordingIdentify(before=barrier.wait)
    monkeypatch.setattr(config, "LLM_GATE_ENABLED", True)
    monkeypatch.setattr("archetype_match.api.validate_images", gate)
    monkeypatch.setattr("archetype_match.api.identify_images", identify)

    resp = client.post("/match", files=_files())

    assert resp.status_code == 200
    assert identify.calls == [(2, None)]


def test_log_and_exit_waits_for_retrieval(monkeypatch):
    order = []
    monkeypatch.setattr(config, "LOG_QUERY_METRICS", True)
    monkeypatch.setattr(config, "LOG_QUERY_AND_EXIT", True)
    monkeypatch.setattr(
        "archetype_match.api.log_query",
        lambda query_id, gt_id, normalized, candidates: order.append(("log", len(candidates))),
    )
    monkeypatch.setattr(
        "archetype_match.api.identify_images",
        RecordingIdentify(before=lambda: order.append(("identify", None))),
    )

    resp = client.post("/match?gtid=arch-1&gtaug=1", files=_files())

    assert resp.status_code == 200
    assert order == [("identify", None), ("log", 7)]


def test_cnn_gate_rejection(monkeypatch):
    llm_calls = []
    monkeypatch.setattr(config, "CNN_GATE_ENABLED", True)
    monkeypatch.setattr(config, "LLM_GATE_ENABLED", True)
    monkeypatch.setattr("archetype_match.api.classify_images", lambda uploads: False)
    monkeypatch.setattr("archetype_match.api.validate_images", lambda uploads: llm_calls.append(1))

    resp = client.post("/match", files=_files())

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "E001"
    assert llm_calls == []


def test_cnn_gate_pass_consults_llm(monkeypatch):
    monkeypatch.setattr(config, "CNN_GATE_ENABLED", True)
    monkeypatch.setattr(config, "LLM_GATE_ENABLED", True)
    monkeypatch.setattr("archetype_match.api.classify_images", lambda uploads: True)
    monkeypatch.setattr(
        "archetype_match.api.validate_images",
        lambda uploads: GateVerdict(error=True, error_code="E002", reason="Blurry"),
    )

    resp = client.post("/match", files=_files())

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "E002"


def test_cnn_session_error_is_500(monkeypatch):
    def broken(uploads):
        raise RuntimeError("model missing")

    monkeypatch.setattr(config, "CNN_GATE_ENABLED", True)
    monkeypatch.setattr("archetype_match.api.classify_images", broken)

    resp = client.post("/match", files=_files())
    assert resp.status_code == 500


def test_startup_warms_extractor(monkeypatch):
    from archetype_match import api

    touched = []

    class FakeEmbedder:
        @property
        def extractor(self):
            touched.append("extractor")
            return object()

    monkeypatch.setattr(api, "get_pipeline", lambda: touched.append("pipeline"))
    monkeypatch.setattr(api, "get_embedder", lambda: FakeEmbedder())
    monkeypatch.setattr(api, "get_cnn_session", lambda: touched.append("cnn"))
    monkeypatch.setattr(config, "CNN_GATE_ENABLED", True)

    api.startup_event()

    assert touched == ["pipeline", "extractor", "cnn"]
