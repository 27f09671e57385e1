from pathlib import Path

import numpy as np
import pytest

from lemma_topics.gensim_lib import TopicModel
from lemma_topics.nlp_utils import Annotator
from lemma_topics.utils import resolve_config

VOCAB = [
    "river",
    "boat",
    "water",
    "fish",
    "stone",
    "mountain",
    "snow",
    "wind",
    "field",
    "harvest",
    "bread",
    "market",
]


class FakeAnnotator(Annotator):
    """
    Whitespace tokenizer standing in for a real model: capitalized tokens
    are proper nouns, "?" has no lemma, and any token in fail_on makes the
    whole document fail.
    """

    def __init__(self, fail_on=()):
        super().__init__("fake", "en")
        self.fail_on = set(fail_on)
        self.calls = 0

    def iter_tokens(self, text):
        self.calls += 1
        for token in text.split():
            if token in self.fail_on:
                raise RuntimeError(f"cannot tag {token!r}")
            if token == "?":
                yield token, None, "PUNCT"
            elif token[0].isupper():
                yield token, token, "PROPN"
            else:
                yield token, token, "NOUN"


def make_text(n_lemmas: int, offset: int = 0) -> str:
    """A text whose filtered lemma stream has exactly n_lemmas entries."""
    tokens = []
    for i in range(n_lemmas):
        tokens.append(VOCAB[(i + offset) % len(VOCAB)])
        if i % 7 == 0:
            tokens.append("Anna")
        if i % 11 == 0:
            tokens.append("?")
    # Split across lines to exercise line joining.
    return "\n".join(" ".join(tokens[i : i + 50]) for i in range(0, len(tokens), 50))


@pytest.fixture
def fake_annotator():
    return FakeAnnotator()


@pytest.fixture
def make_corpus_dir(tmp_path):
    def _make(lengths: dict[str, int], name: str = "texts") -> Path:
        directory = tmp_path / name
        directory.mkdir()
        for offset, (doc_id, n) in enumerate(lengths.items()):
            (directory / f"{doc_id}.txt").write_text(
                make_text(n, offset), encoding="utf-8"
            )
        return directory

    return _make


@pytest.fixture
def pipeline_config(tmp_path):
    def _config(input_dir: Path, **overrides):
        settings = {
            "input_dir": str(input_dir),
            "output_dir": str(tmp_path / "output"),
            "num_topics": 2,
            "burn_in": 0,
            "iterations": 20,
            "thinning": 5,
            "min_global_frequency": 1,
            "stopword_source": "none",
            "top_n": 5,
        }
        settings.update(overrides)
        return resolve_config(overrides=settings)

    return _config


@pytest.fixture
def small_model():
    term_topic = np.array(
        [
            [0.4, 0.3, 0.2, 0.1],
            [0.1, 0.1, 0.1, 0.7],
        ]
    )
    doc_topic = np.array(
        [
            [0.9, 0.1],
            [0.7, 0.3],
            [0.2, 0.8],
        ]
    )
    return TopicModel(
        term_topic,
        doc_topic,
        ["river", "boat", "water", "market"],
        ["novel_a_000", "novel_a_001", "novel_b_000"],
        {"method": "gibbs", "num_topics": 2, "seed": 1, "fingerprint": None},
    )
