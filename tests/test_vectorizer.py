from __future__ import annotations

import numpy as np
import pytest
from rulebook_memory.vectorizer import DEFAULT_DIMENSIONS, Vectorizer, fnv1a, tokenize


class TestFnv1a:
    def test_known_values(self):
        assert fnv1a("") == 0x811C9DC5
        assert fnv1a("a") == 0xE40C292C
        assert fnv1a("foobar") == 0xBF9CF968

    def test_fits_32_bits(self):
        assert 0 <= fnv1a("a much longer token with spaces") < 2**32


class TestTokenize:
    def test_lowercases_and_drops_stop_words(self):
        assert tokenize("The quick, brown FOX!") == ["quick", "brown", "fox"]

    def test_drops_single_characters(self):
        assert tokenize("x y zz") == ["zz"]

    def test_keeps_digits_and_unicode(self):
        assert tokenize("error 404 in v2") == ["error", "404", "v2"]
        assert tokenize("café naïve") == ["café", "naïve"]

    def test_splits_on_underscores_and_punctuation(self):
        assert tokenize("snake_case/path.py") == ["snake", "case", "path", "py"]

    def test_custom_stop_words(self):
        assert tokenize("the cache layer", stop_words={"cache"}) == ["the", "layer"]


class TestVectorizer:
    def test_shape_and_dtype(self):
        vec = Vectorizer().vectorize("database connection pooling")
        assert vec.shape == (DEFAULT_DIMENSIONS,)
        assert vec.dtype == np.float32

    def test_unit_length(self):
        vec = Vectorizer(dimensions=64).vectorize("retry the flaky integration test")
        assert abs(float(np.linalg.norm(vec)) - 1.0) < 1e-5

    def test_deterministic(self):
        vectorizer = Vectorizer()
        text = "hybrid search fuses lexical and vector rankings"
        assert np.array_equal(vectorizer.vectorize(text), vectorizer.vectorize(text))
        assert np.array_equal(
            vectorizer.vectorize(text), Vectorizer().vectorize(text)
        )

    def test_empty_text_is_zero_vector(self):
        vectorizer = Vectorizer()
        assert not vectorizer.vectorize("").any()
        assert not vectorizer.vectorize("the and of a").any()

    def test_idf_weights_terms(self):
        vectorizer = Vectorizer()

        def idf(term: str) -> float:
            return 0.0 if term == "alpha" else 1.0

        weighted = vectorizer.vectorize("alpha beta", idf=idf)
        assert np.array_equal(weighted, vectorizer.vectorize("beta"))

    def test_bucket_is_fnv_hash(self):
        vec = Vectorizer(dimensions=32).vectorize("pooling")
        assert int(np.argmax(vec)) == fnv1a("pooling") % 32
        assert vec[fnv1a("pooling") % 32] == pytest.approx(1.0)

    def test_similar_text_is_closer(self):
        vectorizer = Vectorizer()
        query = vectorizer.vectorize("connection pooling")
        near = vectorizer.vectorize("database connection pooling patterns")
        far = vectorizer.vectorize("unrelated topic about cooking")
        assert float(query @ near) > float(query @ far)

    def test_rejects_non_positive_dimensions(self):
        with pytest.raises(ValueError):
            Vectorizer(dimensions=0)
