import logging

import pytest

from lemma_topics.errors import ConfigurationError, FittingError, PipelineError
from lemma_topics.presets import DEFAULT_CONFIG, PRESETS
from lemma_topics.utils import (
    compute_fingerprint,
    log_duration,
    log_time,
    resolve_config,
    validate_config,
    write_files_atomically,
)


def test_resolve_config_defaults():
    config = resolve_config()
    assert config == DEFAULT_CONFIG
    assert config is not DEFAULT_CONFIG


def test_resolve_config_preset_then_overrides():
    config = resolve_config("Japanese (MeCab/UniDic)", {"chunk_size": 200, "seed": None})
    assert config["tokenizer_type"] == "MeCab"
    assert config["chunk_size"] == 200
    # None overrides are ignored.
    assert config["seed"] == DEFAULT_CONFIG["seed"]


@pytest.mark.parametrize("preset", list(PRESETS))
def test_presets_are_valid(preset):
    validate_config(resolve_config(preset))


def test_unknown_preset():
    with pytest.raises(ConfigurationError, match="Unknown preset"):
        resolve_config("Klingon")


@pytest.mark.parametrize(
    "overrides,match",
    [
        ({"chunk_size": 0}, "chunk_size"),
        ({"chunk_size": True}, "chunk_size"),
        ({"num_topics": 1}, "num_topics"),
        ({"thinning": 0}, "thinning"),
        ({"seed": -1}, "seed"),
        ({"method": "nmf"}, "method"),
        ({"stopword_source": "web"}, "stopword_source"),
        ({"stopword_source": "file"}, "stopword_file"),
        ({"tfidf_threshold": -0.5}, "tfidf_threshold"),
        ({"alpha": 0.0}, "alpha"),
        ({"eta": -1.0}, "eta"),
        ({"topics": 5}, "Unknown settings"),
    ],
)
def test_invalid_settings(overrides, match):
    with pytest.raises(ConfigurationError, match=match):
        resolve_config(overrides=overrides)


def test_error_messages_name_the_stage():
    assert str(ConfigurationError("bad")) == "configuration failed: bad"
    assert str(ConfigurationError("bad", stage="reader")) == "reader failed: bad"
    assert str(FittingError("diverged")) == "trainer failed: diverged"
    assert isinstance(FittingError("x"), PipelineError)


def test_fingerprint_is_order_sensitive():
    a = compute_fingerprint(["a", "b"], ["x", "y"])
    assert a == compute_fingerprint(["a", "b"], ["x", "y"])
    assert a != compute_fingerprint(["b", "a"], ["y", "x"])
    assert a != compute_fingerprint(["a", "b"], ["x", "z"])


def test_write_files_atomically(tmp_path):
    target = tmp_path / "out"
    paths = write_files_atomically(target, {"one.txt": ["a", "b"], "two.txt": []})
    assert [p.name for p in paths] == ["one.txt", "two.txt"]
    assert (target / "one.txt").read_text(encoding="utf-8") == "a\nb\n"
    assert (target / "two.txt").read_text(encoding="utf-8") == ""


def test_write_files_atomically_keeps_old_files_on_error(tmp_path):
    write_files_atomically(tmp_path, {"one.txt": ["old"], "two.txt": ["old"]})
    with pytest.raises(ValueError):
        write_files_atomically(tmp_path, {"one.txt": ["new"], "two.txt": ["bad\nline"]})
    assert (tmp_path / "one.txt").read_text(encoding="utf-8") == "old\n"
    assert (tmp_path / "two.txt").read_text(encoding="utf-8") == "old\n"
    assert not [p for p in tmp_path.iterdir() if p.name.startswith(".one")]


def test_log_time_and_log_duration(caplog):
    @log_duration("square")
    def square(x):
        return x * x

    with caplog.at_level(logging.INFO):
        with log_time("block", extra={"documents": 3}):
            pass
        assert square(3) == 9
    messages = [r.getMessage() for r in caplog.records]
    assert messages[0].startswith("START stage=block") and "documents=3" in messages[0]
    assert messages[1].startswith("DONE stage=block elapsed=")
    assert any(m.startswith("DONE stage=square elapsed=") for m in messages)


def test_log_time_reports_failed_stage(caplog):
    with caplog.at_level(logging.INFO):
        with pytest.raises(RuntimeError):
            with log_time("explode"):
                raise RuntimeError("boom")
    last = caplog.records[-1]
    assert last.levelno == logging.WARNING
    assert last.getMessage().startswith("FAILED stage=explode")


@pytest.mark.parametrize("tags", ["PROPN", ("PROPN", 3), None])
def test_excluded_tags_must_be_a_list_of_strings(tags):
    config = dict(DEFAULT_CONFIG, excluded_tags=tags)
    with pytest.raises(ConfigurationError, match="excluded_tags"):
        validate_config(config)
