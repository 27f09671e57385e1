import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator

import polars as pl
import pysbd
import regex as re
import spacy
from fugashi import Tagger

from lemma_topics.errors import AnnotationError, ConfigurationError

ANNOTATION_SCHEMA = {
    "token": pl.String,
    "lemma": pl.String,
    "pos": pl.String,
    "position": pl.Int64,
}

PROPER_NOUN = "PROPN"

# UniDic pos1 -> Universal POS, following the UD Japanese conventions.
UNIDIC_POS_MAP = {
    "名詞": "NOUN",
    "代名詞": "PRON",
    "動詞": "VERB",
    "形容詞": "ADJ",
    "形状詞": "ADJ",
    "連体詞": "DET",
    "副詞": "ADV",
    "接続詞": "CCONJ",
    "感動詞": "INTJ",
    "助詞": "ADP",
    "助動詞": "AUX",
    "接頭辞": "NOUN",
    "接尾辞": "NOUN",
    "補助記号": "PUNCT",
    "記号": "SYM",
    "空白": "SPACE",
}


class Annotator(ABC):
    """
    Token-level annotation of a whole document.

    Subclasses yield (token, lemma, pos) triples for every non-whitespace
    token; `annotate` turns them into a polars table with a running
    position and wraps any backend failure in AnnotationError.
    """

    def __init__(
        self,
        name: str,
        language: str,
        whitespace_rx: re.Pattern = re.compile(r"^\s*$"),
    ):
        self.name = name
        self.language = language
        self.whitespace_rx = whitespace_rx
        try:
            self.segmenter = pysbd.Segmenter(language=language, clean=False)
        except ValueError as e:
            raise ConfigurationError(
                f"No sentence segmenter for language {language!r}: {e}",
                stage="loader",
            ) from e

    @abstractmethod
    def iter_tokens(self, text: str) -> Iterator[tuple[str, str | None, str | None]]:
        pass

    def annotate(self, text: str) -> pl.DataFrame:
        try:
            rows = [
                (token, lemma, pos, position)
                for position, (token, lemma, pos) in enumerate(self.iter_tokens(text))
            ]
        except AnnotationError:
            raise
        except Exception as e:
            raise AnnotationError(f"{self!r} could not annotate text: {e}") from e
        return pl.DataFrame(rows, schema=ANNOTATION_SCHEMA, orient="row")

    def __repr__(self):
        return f"{type(self).__name__}<{self.name},{self.language}>"


class SpacyAnnotator(Annotator):
    def __init__(self, name: str, language: str = "en"):
        super().__init__(name, language)
        try:
            self.model = spacy.load(name, disable=["parser", "ner"])
        except OSError as e:
            raise ConfigurationError(
                f"Could not load spaCy model {name!r}; "
                f"install it with `python -m spacy download {name}`",
                stage="loader",
            ) from e

    def iter_tokens(self, text: str) -> Iterator[tuple[str, str | None, str | None]]:
        sentences = self.segmenter.segment(text)
        for doc in self.model.pipe(sentences):
            for t in doc:
                if self.whitespace_rx.match(t.orth_):
                    continue
                yield t.orth_, t.lemma_ or None, t.pos_ or None


def unidic_pos(pos1: str | None, pos2: str | None) -> str:
    """
    Map UniDic part-of-speech fields onto the coarse tag set.

    Examples:
        >>> unidic_pos("名詞", "固有名詞")
        'PROPN'
        >>> unidic_pos("名詞", "普通名詞")
        'NOUN'
        >>> unidic_pos("名詞", "数詞")
        'NUM'
        >>> unidic_pos(None, None)
        'X'
    """
    if pos1 == "名詞" and pos2 == "固有名詞":
        return PROPER_NOUN
    if pos1 == "名詞" and pos2 == "数詞":
        return "NUM"
    return UNIDIC_POS_MAP.get(pos1 or "", "X")


class FugashiAnnotator(Annotator):
    def __init__(self, name: str, language: str = "ja"):
        super().__init__(name, language)
        flags = DICTIONARY_FLAGS.get(name, name)
        try:
            self.model = Tagger(flags)
        except RuntimeError as e:
            raise ConfigurationError(
                f"Could not load MeCab dictionary {name!r}: {e}", stage="loader"
            ) from e

    def iter_tokens(self, text: str) -> Iterator[tuple[str, str | None, str | None]]:
        for sentence in self.segmenter.segment(text):
            for t in self.model(sentence):
                if self.whitespace_rx.match(t.surface):
                    continue
                # Unknown words carry no lemma in UniDic.
                lemma = None if t.is_unk else t.feature.lemma
                yield t.surface, lemma or None, unidic_pos(
                    t.feature.pos1, t.feature.pos2
                )


def _mecab_flags(dicdir: str | None) -> str:
    return f"-d {dicdir} -r {dicdir}/dicrc" if dicdir else ""


# An empty flag string lets fugashi find the installed unidic-lite package.
DICTIONARY_FLAGS = {
    "unidic-lite": "",
    "UniDic-CWJ": _mecab_flags(os.environ.get("MECAB_DICDIR_CWJ")),
    "近現代口語小説UniDic": _mecab_flags(os.environ.get("MECAB_DICDIR_NOVEL")),
}

ANNOTATOR_MAP: dict[str, type[Annotator]] = {
    "spaCy": SpacyAnnotator,
    "MeCab": FugashiAnnotator,
}


def load_annotator(tokenizer_type: str, dictionary_type: str, language: str) -> Annotator:
    """
    Build the annotator for a tokenizer type / dictionary type pair.

    Examples:
        >>> load_annotator("Stanza", "en", "en")
        Traceback (most recent call last):
        ...
        lemma_topics.errors.ConfigurationError: loader failed: Unknown tokenizer type 'Stanza'; choose from spaCy, MeCab
    """
    if tokenizer_type not in ANNOTATOR_MAP:
        raise ConfigurationError(
            f"Unknown tokenizer type {tokenizer_type!r}; "
            f"choose from {', '.join(ANNOTATOR_MAP)}",
            stage="loader",
        )
    annotator = ANNOTATOR_MAP[tokenizer_type](dictionary_type, language)
    logging.info(f"Loaded annotator {annotator!r}")
    return annotator


def read_wordlist(path: str | Path) -> set[str]:
    """
    Read a UTF-8 stopword file: one word per line, blank lines and
    lines starting with '#' are ignored.
    """
    path = Path(path)
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(
            f"Could not read stopword file {path}: {e}", stage="loader"
        ) from e
    return {
        line.strip().lower()
        for line in lines
        if line.strip() and not line.lstrip().startswith("#")
    }


def load_stopwords(
    source: str, language: str, path: str | Path | None = None
) -> set[str]:
    """
    Load the stopword list used by the corpus assembler.

    Args:
        source: "model" for the list shipped with spaCy's language defaults,
            "file" for a wordlist on disk, "none" for no stopwords.
        language: ISO language code, used by the "model" source.
        path: Wordlist path, required by the "file" source.

    Returns:
        Lowercased stopwords.
    """
    if source == "none":
        return set()
    if source == "file":
        if path is None:
            raise ConfigurationError("No stopword file given", stage="loader")
        stopwords = read_wordlist(path)
    elif source == "model":
        try:
            stopwords = {w.lower() for w in spacy.util.get_lang_class(language).Defaults.stop_words}
        except ImportError as e:
            raise ConfigurationError(
                f"spaCy has no stopword list for language {language!r}",
                stage="loader",
            ) from e
    else:
        raise ConfigurationError(f"Unknown stopword source {source!r}", stage="loader")
    logging.info(f"Loaded {len(stopwords)} stopwords from {source}")
    return stopwords
