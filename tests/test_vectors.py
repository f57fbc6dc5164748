"""Tests for vector encoding, cosine similarity and the embedder."""

import struct

import pytest

from convo_recall import vectors
from convo_recall.vectors import (
    Embedder,
    EmbeddingUnavailableError,
    SentenceTransformerEmbedder,
    cosine_similarity,
    decode_vector,
    encode_vector,
)

from conftest import FakeEmbedder


class TestByteContract:
    """The stored format is little-endian float32, independent of numpy."""

    def test_encode_is_little_endian_float32(self):
        data = encode_vector([1.0, -2.5])
        assert data == struct.pack('<ff', 1.0, -2.5)
        assert len(data) == 8

    def test_known_bytes_decode(self):
        # 1.0f little-endian is 00 00 80 3f
        assert decode_vector(b"\x00\x00\x80\x3f") == [1.0]

    def test_round_trip(self):
        original = [0.5, -0.25, 3.0, 0.0]
        assert decode_vector(encode_vector(original)) == original

    def test_round_trip_is_float32_precision(self):
        decoded = decode_vector(encode_vector([0.1]))
        assert decoded[0] == pytest.approx(0.1, rel=1e-6)
        assert decoded[0] == struct.unpack('<f', struct.pack('<f', 0.1))[0]

    def test_encode_accepts_tuples(self):
        assert encode_vector((1.0, 2.0)) == encode_vector([1.0, 2.0])

    def test_decode_empty(self):
        assert decode_vector(b"") == []
        assert decode_vector(None) == []

    def test_misaligned_buffer_returns_empty(self, caplog):
        """A length not divisible by 4 is logged and decodes to nothing."""
        with caplog.at_level("WARNING", logger="convo_recall.vectors"):
            assert decode_vector(b"\x00\x00\x80\x3f\x00") == []
        assert "not divisible by 4" in caplog.text


class TestCosineSimilarity:

    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_dimension_mismatch_returns_zero(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0

    def test_zero_norm_returns_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_empty_vectors_return_zero(self):
        assert cosine_similarity([], []) == 0.0

    def test_returns_python_float(self):
        assert isinstance(cosine_similarity([1.0], [1.0]), float)


class TestEmbedders:

    def test_fake_embedder_satisfies_protocol(self):
        assert isinstance(FakeEmbedder(), Embedder)

    def test_sentence_transformer_embedder_satisfies_protocol(self):
        assert isinstance(SentenceTransformerEmbedder(), Embedder)

    def test_failed_model_load_reports_unavailable(self, monkeypatch):
        """A model that cannot be loaded makes the embedder unavailable, not broken."""
        embedder = SentenceTransformerEmbedder(model_name="definitely-not-a-real-model")

        def fail(self):
            self._load_failed = True
            return None

        monkeypatch.setattr(SentenceTransformerEmbedder, "_get_model", fail)
        assert embedder.is_available() is False
        with pytest.raises(EmbeddingUnavailableError):
            embedder.embed("anything")
        with pytest.raises(EmbeddingUnavailableError):
            embedder.embed_batch(["anything"])

    def test_embed_batch_empty_needs_no_model(self):
        embedder = SentenceTransformerEmbedder(model_name="never-loaded")
        assert embedder.embed_batch([]) == []
        assert "never-loaded" not in vectors._models

    def test_model_info(self):
        info = SentenceTransformerEmbedder(model_name="m", dimensions=8).model_info()
        assert info["model"] == "m"
        assert info["dimensions"] == 8
        assert info["provider"] == "sentence-transformers"
