import threading
from pathlib import Path

import numpy as np
import pytest

from conftest import FakeAnnotator, make_text
from lemma_topics import pipeline
from lemma_topics.data_lib import IDS_FILENAME, TEXTS_FILENAME, read_corpus
from lemma_topics.errors import CancelledError, ConfigurationError
from lemma_topics.gensim_lib import TopicModel
from lemma_topics.pipeline import MODEL_DIRNAME, WORDCLOUD_DIRNAME, run_pipeline


@pytest.fixture
def no_training(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("the topic model must not be fitted")

    monkeypatch.setattr(pipeline, "fit_topic_model", fail)


def test_end_to_end_chunk_pairing(make_corpus_dir, pipeline_config, fake_annotator):
    input_dir = make_corpus_dir({"doc1": 2500, "doc2": 999, "doc3": 3000})
    config = pipeline_config(input_dir)

    result = run_pipeline(config, annotator=fake_annotator)

    expected_ids = ["doc1_000", "doc1_001", "doc3_000", "doc3_001", "doc3_002"]
    assert result.corpus.ids == expected_ids
    ids_lines = (result.output_dir / IDS_FILENAME).read_text(encoding="utf-8").splitlines()
    text_lines = (result.output_dir / TEXTS_FILENAME).read_text(encoding="utf-8").splitlines()
    assert ids_lines == expected_ids
    assert len(text_lines) == 5
    assert text_lines == result.corpus.texts

    assert result.dtm.doc_ids == expected_ids
    assert result.model.doc_ids == tuple(expected_ids)
    np.testing.assert_allclose(result.model.term_topic_weights.sum(axis=1), 1.0, atol=1e-6)
    np.testing.assert_allclose(result.model.doc_topic_weights.sum(axis=1), 1.0, atol=1e-6)

    saved = TopicModel.load(result.output_dir / MODEL_DIRNAME)
    assert saved.params["fingerprint"] == read_corpus(result.output_dir).fingerprint()
    assert saved.params["seed"] == config["seed"]


def test_empty_directory_fails_before_training(tmp_path, pipeline_config, fake_annotator, no_training):
    empty = tmp_path / "empty"
    empty.mkdir()
    with pytest.raises(ConfigurationError, match="No input documents"):
        run_pipeline(pipeline_config(empty), annotator=fake_annotator)
    assert fake_annotator.calls == 0


def test_only_short_documents_fail_before_training(make_corpus_dir, pipeline_config, fake_annotator, no_training):
    input_dir = make_corpus_dir({"short1": 10, "short2": 999})
    with pytest.raises(ConfigurationError, match="No chunks"):
        run_pipeline(pipeline_config(input_dir), annotator=fake_annotator)


def test_empty_vocabulary_fails_before_training(make_corpus_dir, pipeline_config, fake_annotator, no_training):
    input_dir = make_corpus_dir({"doc1": 1000})
    config = pipeline_config(input_dir, min_global_frequency=10_000)
    with pytest.raises(ConfigurationError, match="Vocabulary is empty"):
        run_pipeline(config, annotator=fake_annotator)


def test_failed_annotation_skips_only_that_document(make_corpus_dir, pipeline_config):
    input_dir = make_corpus_dir({"doc1": 1000, "doc3": 2000})
    (input_dir / "doc2.txt").write_text(make_text(3000) + " BOOM", encoding="utf-8")
    annotator = FakeAnnotator(fail_on={"BOOM"})

    result = run_pipeline(pipeline_config(input_dir), annotator=annotator)

    assert result.corpus.ids == ["doc1_000", "doc3_000", "doc3_001"]
    assert [doc_id for doc_id, _ in result.corpus.skipped] == ["doc2"]
    ids_lines = (result.output_dir / IDS_FILENAME).read_text(encoding="utf-8").splitlines()
    text_lines = (result.output_dir / TEXTS_FILENAME).read_text(encoding="utf-8").splitlines()
    assert len(ids_lines) == len(text_lines) == 3


def test_rerun_replaces_previous_corpus_files(make_corpus_dir, pipeline_config, fake_annotator):
    first_dir = make_corpus_dir({"doc1": 3000}, name="first")
    second_dir = make_corpus_dir({"other": 1000}, name="second")
    run_pipeline(pipeline_config(first_dir), annotator=fake_annotator)
    result = run_pipeline(pipeline_config(second_dir), annotator=fake_annotator)
    ids_lines = (result.output_dir / IDS_FILENAME).read_text(encoding="utf-8").splitlines()
    assert ids_lines == ["other_000"]


def test_keep_remainder_and_wordclouds(make_corpus_dir, pipeline_config, fake_annotator):
    input_dir = make_corpus_dir({"doc1": 1500, "doc2": 400})
    config = pipeline_config(input_dir, keep_remainder=True, wordclouds=True)
    result = run_pipeline(config, annotator=fake_annotator)
    assert result.corpus.ids == ["doc1_000", "doc1_001", "doc2_000"]
    clouds = sorted(p.name for p in (result.output_dir / WORDCLOUD_DIRNAME).iterdir())
    assert clouds == ["topic_000.png", "topic_001.png"]


def test_tfidf_pruning_pass(make_corpus_dir, pipeline_config, fake_annotator):
    input_dir = make_corpus_dir({"doc1": 1000})
    (input_dir / "doc2.txt").write_text(
        " ".join(["zebra", "yak", "river", "river"] * 250), encoding="utf-8"
    )
    plain = run_pipeline(pipeline_config(input_dir), annotator=fake_annotator)
    pruned = run_pipeline(
        pipeline_config(input_dir, tfidf_threshold=0.0), annotator=fake_annotator
    )
    # "river" occurs in both chunks, so its TF-IDF is zero.
    assert "river" in plain.dtm.vocabulary
    assert "river" not in pruned.dtm.vocabulary
    assert {"zebra", "yak"} <= set(pruned.dtm.vocabulary)
    assert pruned.model.vocabulary == tuple(pruned.dtm.vocabulary)


def test_tfidf_pruning_everything_fails_before_training(
    make_corpus_dir, pipeline_config, fake_annotator, no_training
):
    input_dir = make_corpus_dir({"doc1": 2000})
    # Every vocabulary word occurs in every chunk.
    with pytest.raises(ConfigurationError):
        run_pipeline(pipeline_config(input_dir, tfidf_threshold=0.0), annotator=fake_annotator)


def test_invalid_config_is_rejected(make_corpus_dir, pipeline_config, fake_annotator, no_training):
    input_dir = make_corpus_dir({"doc1": 1000})
    config = dict(pipeline_config(input_dir))
    config["chunk_size"] = 0
    with pytest.raises(ConfigurationError, match="chunk_size"):
        run_pipeline(config, annotator=fake_annotator)


def test_cancelled_run_writes_nothing(make_corpus_dir, pipeline_config, no_training):
    input_dir = make_corpus_dir({"doc1": 1000, "doc2": 1000, "doc3": 1000})
    event = threading.Event()

    class CancellingAnnotator(FakeAnnotator):
        def annotate(self, text):
            table = super().annotate(text)
            event.set()
            return table

    config = pipeline_config(input_dir)
    with pytest.raises(CancelledError, match="1 chunks"):
        run_pipeline(config, annotator=CancellingAnnotator(), cancel_event=event)
    assert not Path(config["output_dir"]).exists()


def test_rerun_replaces_previous_wordclouds(make_corpus_dir, pipeline_config, fake_annotator):
    input_dir = make_corpus_dir({"doc1": 2000, "doc2": 2000})
    run_pipeline(pipeline_config(input_dir, num_topics=4, wordclouds=True), annotator=fake_annotator)
    result = run_pipeline(
        pipeline_config(input_dir, num_topics=2, wordclouds=True), annotator=fake_annotator
    )
    clouds = sorted(p.name for p in (result.output_dir / WORDCLOUD_DIRNAME).iterdir())
    assert clouds == ["topic_000.png", "topic_001.png"]

    result = run_pipeline(pipeline_config(input_dir, num_topics=2), annotator=fake_annotator)
    assert not (result.output_dir / WORDCLOUD_DIRNAME).exists()
