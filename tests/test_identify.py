import numpy as np
import pytest

from archetype_match.identify import IdentificationPipeline, ground_truth_ranks
from archetype_match.pipeline_types import Hit, QueryVectorPair
from archetype_match.rerank import HeadScorerError
from archetype_match.vector_index import VectorIndexError


def _unit(v):
    v = np.asarray(v, dtype="float32")
    return v / np.linalg.norm(v)


class InMemoryIndex:
    """
    Brute-force cosine index; every archetype is stored as two points
    (front, back) carrying the archetype id in their payload.
    """

    def __init__(self, refs):
        self.refs = refs
        self.search_calls = 0
        self.fetch_calls = 0

    def _payload(self, aid):
        return {"archetypeId": aid, "archetypeDetails": {"numistaItemNumber": f"N# {aid[1:]}"}}

    def search_batch(self, vectors, limit):
        self.search_calls += 1
        out = []
        for q in vectors:
            hits = [
                Hit(aid, float(np.dot(q, r)), self._payload(aid))
                for aid, faces in self.refs.items()
                for r in faces
            ]
            hits.sort(key=lambda h: -h.score)
            out.append(hits[:limit])
        return out

    def fetch_vectors(self, item_ids):
        self.fetch_calls += 1
        return {i: list(self.refs[i]) for i in item_ids if i in self.refs}


class BrokenIndex(InMemoryIndex):
    def fetch_vectors(self, item_ids):
        raise VectorIndexError("fetch failed")


class FailingScorer:
    def score(self, features):
        raise HeadScorerError("scorer offline")


class DummyEmbedder:
    def __init__(self, pair):
        self.pair = pair

    def embed(self, images):
        if len(images) < 2:
            raise ValueError("Two images are required")
        return self.pair


FRONT = _unit([1, 0.1, 0, 0])
BACK = _unit([0, 1, 0.2, 0])


def _catalog():
    rng = np.random.default_rng(7)
    refs = {"a1": [FRONT, BACK]}
    for i in range(2, 12):
        refs[f"a{i}"] = [_unit(rng.normal(size=4)), _unit(rng.normal(size=4))]
    # one archetype with a single stored face
    refs["a99"] = [_unit([1, 0.12, 0, 0])]
    return refs


def test_identical_archetype_ranks_first():
    index = InMemoryIndex(_catalog())
    pipeline = IdentificationPipeline(index, top_n=5)

    result = pipeline.run(QueryVectorPair(q1=FRONT, q2=BACK))

    top = result.head[0]
    assert top.item_id == "a1"
    assert top.bp_best == pytest.approx(2.0, abs=1e-5)
    assert len(result.head) == 5
    assert index.search_calls == 1
    assert index.fetch_calls == 1


def test_back_first_photos_still_match():
    index = InMemoryIndex(_catalog())
    result = IdentificationPipeline(index).run(QueryVectorPair(q1=BACK, q2=FRONT))
    assert result.head[0].item_id == "a1"


def test_single_face_archetype_gets_zero_bipartite():
    index = InMemoryIndex(_catalog())
    result = IdentificationPipeline(index).run(QueryVectorPair(q1=FRONT, q2=BACK))

    lone = next(c for c in result.ranked if c.item_id == "a99")
    assert (lone.bp_best, lone.bp_gap) == (0.0, 0.0)


def test_recall_size_zero_gives_empty_head():
    index = InMemoryIndex(_catalog())
    result = IdentificationPipeline(index, recall_size=0).run(QueryVectorPair(q1=FRONT, q2=BACK))

    assert result.head == []
    assert result.ranked == []
    assert index.search_calls == 0


def test_scorer_failure_keeps_unrefined_head():
    index = InMemoryIndex(_catalog())
    pair = QueryVectorPair(q1=FRONT, q2=BACK)

    plain = IdentificationPipeline(index).run(pair)
    refined = IdentificationPipeline(index, head_scorer=FailingScorer()).run(pair)

    assert [c.item_id for c in refined.head] == [c.item_id for c in plain.head]


def test_percentiles_are_bounded():
    index = InMemoryIndex(_catalog())
    result = IdentificationPipeline(index).run(QueryVectorPair(q1=FRONT, q2=BACK))

    assert all(0.0 <= c.percentile_score <= 100.0 for c in result.ranked)
    assert result.head[0].percentile_score > 50.0


def test_required_stage_failure_propagates():
    index = BrokenIndex(_catalog())
    with pytest.raises(VectorIndexError):
        IdentificationPipeline(index).run(QueryVectorPair(q1=FRONT, q2=BACK))


def test_identify_embeds_then_runs_and_reports_ranks():
    index = InMemoryIndex(_catalog())
    pipeline = IdentificationPipeline(index, embedder=DummyEmbedder(QueryVectorPair(q1=FRONT, q2=BACK)))

    result = pipeline.identify([b"front", b"back"], ground_truth="1")

    assert result.head[0].item_id == "a1"
    assert result.ranks["final_rank"] == 1
    assert result.ranks["ann_rank"] >= 1
    assert "embed" in result.timings and "recall" in result.timings


def test_identify_without_embedder_raises():
    with pytest.raises(RuntimeError):
        IdentificationPipeline(InMemoryIndex({})).identify([b"a", b"b"])


def test_ground_truth_ranks_absent_is_zero():
    assert ground_truth_ranks([], [], "N# 5") == {"ann_rank": 0, "final_rank": 0}


def test_identical_query_faces_with_two_noise_candidates():
    v = _unit([0.3, 0.9, 0.1, 0.2])
    refs = {
        "a5": [v, v],
        "a6": [_unit([1, 0, 0, 0]), _unit([0, 0, 1, 0])],
        "a7": [_unit([0, 0, 0, 1]), _unit([1, 0, 1, 0])],
    }
    result = IdentificationPipeline(InMemoryIndex(refs), top_n=5).run(QueryVectorPair(q1=v, q2=v))

    assert [c.item_id for c in result.head][0] == "a5"
    assert result.head[0].bp_best == pytest.approx(2.0, abs=1e-5)
    assert len(result.head) == 3
