from typing import TypedDict


class PipelineConfig(TypedDict):
    input_dir: str
    output_dir: str
    language: str
    tokenizer_type: str
    dictionary_type: str
    excluded_tags: list[str]
    chunk_size: int
    keep_remainder: bool
    min_global_frequency: int
    num_topics: int
    method: str
    seed: int
    burn_in: int
    thinning: int
    iterations: int
    alpha: float | None
    eta: float
    passes: int
    stopword_source: str
    stopword_file: str | None
    tfidf_threshold: float | None
    top_n: int
    wordclouds: bool


DEFAULT_CONFIG: PipelineConfig = {
    "input_dir": "texts",
    "output_dir": "output",
    "language": "en",
    "tokenizer_type": "spaCy",
    "dictionary_type": "en_core_web_sm",
    "excluded_tags": ["PROPN"],
    "chunk_size": 1000,
    "keep_remainder": False,
    "min_global_frequency": 5,
    "num_topics": 25,
    "method": "gibbs",
    "seed": 1,
    "burn_in": 100,
    "thinning": 25,
    "iterations": 500,
    "alpha": None,
    "eta": 0.1,
    "passes": 10,
    "stopword_source": "model",
    "stopword_file": None,
    "tfidf_threshold": None,
    "top_n": 20,
    "wordclouds": False,
}

TOPIC_METHODS = ("gibbs", "variational")
STOPWORD_SOURCES = ("model", "file", "none")

# Language and annotator bundles. Everything else falls back to DEFAULT_CONFIG.
PRESETS: dict[str, dict] = {
    "English (spaCy)": {
        "language": "en",
        "tokenizer_type": "spaCy",
        "dictionary_type": "en_core_web_sm",
    },
    "German (spaCy)": {
        "language": "de",
        "tokenizer_type": "spaCy",
        "dictionary_type": "de_core_news_sm",
    },
    "Japanese (MeCab/UniDic)": {
        "language": "ja",
        "tokenizer_type": "MeCab",
        "dictionary_type": "unidic-lite",
        # Japanese text has no whitespace, so fewer lemmas still make a
        # meaningful pseudo-document.
        "chunk_size": 500,
    },
}
