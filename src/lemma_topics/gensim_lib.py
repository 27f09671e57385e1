import copy
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

import lda
import numpy as np
import polars as pl
import regex as re
from gensim.corpora import Dictionary
from gensim.matutils import Sparse2Corpus, corpus2csc
from gensim.models import LdaModel, TfidfModel
from gensim.parsing.preprocessing import (
    preprocess_string,
    strip_multiple_whitespaces,
    strip_numeric,
    strip_punctuation,
)
from scipy import sparse

from lemma_topics.errors import ConfigurationError, FittingError
from lemma_topics.utils import log_duration, log_time

logger = logging.getLogger(__name__)

UNICODE_PUNCT_RX = re.compile(r"[\p{P}\p{S}]+")
UNICODE_DIGIT_RX = re.compile(r"\p{N}+")


def strip_unicode_punctuation(s: str) -> str:
    """gensim's strip_punctuation only knows ASCII; this also covers 「」、。 etc."""
    return UNICODE_PUNCT_RX.sub(" ", s)


def strip_unicode_numeric(s: str) -> str:
    return UNICODE_DIGIT_RX.sub("", s)


NORMALIZATION_FILTERS = [
    lambda s: s.lower(),
    strip_punctuation,
    strip_unicode_punctuation,
    strip_numeric,
    strip_unicode_numeric,
    strip_multiple_whitespaces,
]


def normalize_text(text: str, stopwords: set[str] | frozenset[str] = frozenset()) -> list[str]:
    """
    Lowercase, strip punctuation and digits, collapse whitespace, drop stopwords.

    Examples:
        >>> normalize_text("The 3 Cats, sat!", {"the"})
        ['cats', 'sat']
    """
    return [
        token
        for token in preprocess_string(text, NORMALIZATION_FILTERS)
        if token not in stopwords
    ]


class DocumentTermMatrix:
    """
    Term counts with one row per chunk, in corpus order.

    Attributes:
        matrix: CSR matrix of integer counts, shape (len(doc_ids), len(vocabulary)).
        doc_ids: Row labels.
        vocabulary: Column labels.
        dictionary: gensim Dictionary whose ids are the column indices.
    """

    def __init__(
        self,
        matrix: sparse.csr_matrix,
        doc_ids: list[str],
        vocabulary: list[str],
        dictionary: Dictionary,
    ):
        if matrix.shape != (len(doc_ids), len(vocabulary)):
            raise ValueError(
                f"Matrix shape {matrix.shape} does not match "
                f"{len(doc_ids)} rows x {len(vocabulary)} terms"
            )
        self.matrix = matrix
        self.doc_ids = doc_ids
        self.vocabulary = vocabulary
        self.dictionary = dictionary

    @property
    def shape(self) -> tuple[int, int]:
        return self.matrix.shape

    def term_frequencies(self) -> np.ndarray:
        return np.asarray(self.matrix.sum(axis=0)).ravel()

    def bows(self) -> list[list[tuple[int, int]]]:
        """The matrix as a gensim bag-of-words corpus."""
        return [
            [(int(i), int(c)) for i, c in doc]
            for doc in Sparse2Corpus(self.matrix, documents_columns=False)
        ]

    def __repr__(self):
        return f"DocumentTermMatrix<docs={self.shape[0]},terms={self.shape[1]}>"


def _bows_to_dtm(
    doc_ids: list[str],
    bows: list[list[tuple[int, int]]],
    dictionary: Dictionary,
) -> DocumentTermMatrix:
    if len(dictionary) == 0:
        raise ConfigurationError(
            "Vocabulary is empty after stopword and frequency filtering", stage="corpus"
        )
    matrix = corpus2csc(
        bows, num_terms=len(dictionary), num_docs=len(bows), dtype=np.int64
    ).T.tocsr()
    vocabulary = [dictionary[i] for i in range(len(dictionary))]
    dtm = DocumentTermMatrix(matrix, doc_ids, vocabulary, dictionary)
    empty_rows = [doc_ids[i] for i in np.flatnonzero(dtm.matrix.getnnz(axis=1) == 0)]
    if empty_rows:
        logger.warning(
            "%d chunks have no terms left after filtering: %s",
            len(empty_rows),
            ", ".join(empty_rows[:10]),
        )
    return dtm


def build_matrix(
    pairs: Iterable[tuple[str, str]],
    stopwords: set[str] | frozenset[str] = frozenset(),
    min_global_frequency: int = 5,
) -> DocumentTermMatrix:
    """
    Build the document-term matrix of (chunk id, chunk text) pairs.

    Texts are normalized with normalize_text, then terms occurring fewer than
    min_global_frequency times across all chunks are removed. Row order
    equals input order.

    Raises:
        ConfigurationError: no pairs were given or no term survives.
    """
    pairs = list(pairs)
    if not pairs:
        raise ConfigurationError(
            "No chunks to model; check the input directory and chunk_size",
            stage="corpus",
        )
    with log_time("corpus.build_matrix", extra={"chunks": len(pairs)}):
        doc_ids = [chunk_id for chunk_id, _ in pairs]
        tokens = [normalize_text(text, stopwords) for _, text in pairs]
        dictionary = Dictionary(tokens)
        logger.info("Vocabulary before frequency cutoff: %d terms", len(dictionary))
        rare_ids = [
            token_id
            for token_id, freq in dictionary.cfs.items()
            if freq < min_global_frequency
        ]
        dictionary.filter_tokens(bad_ids=rare_ids)
        logger.info(
            "Vocabulary after cutoff (min frequency %d): %d terms",
            min_global_frequency,
            len(dictionary),
        )
        bows = [dictionary.doc2bow(t) for t in tokens]
        return _bows_to_dtm(doc_ids, bows, dictionary)


def mean_tfidf(dtm: DocumentTermMatrix) -> np.ndarray:
    """Mean (L2-normalized) TF-IDF weight of every term over all chunks."""
    bows = dtm.bows()
    tfidf = TfidfModel(bows, id2word=dtm.dictionary)
    weights = corpus2csc(
        tfidf[bows], num_terms=dtm.shape[1], num_docs=dtm.shape[0]
    )
    return np.asarray(weights.sum(axis=1)).ravel() / max(dtm.shape[0], 1)


def prune_by_tfidf(dtm: DocumentTermMatrix, threshold: float) -> DocumentTermMatrix:
    """
    Drop terms whose mean TF-IDF weight is at or below threshold.

    Low mean weight marks terms that are either everywhere or almost nowhere,
    which is a corpus-driven alternative to a fixed stopword list.
    """
    scores = mean_tfidf(dtm)
    keep = np.flatnonzero(scores > threshold)
    logger.info(
        "TF-IDF pruning (threshold %g) removes %d of %d terms",
        threshold,
        dtm.shape[1] - len(keep),
        dtm.shape[1],
    )
    if len(keep) == 0:
        raise ConfigurationError(
            f"No terms have a mean TF-IDF weight above {threshold}", stage="corpus"
        )
    dictionary = copy.deepcopy(dtm.dictionary)
    # compactify() keeps surviving ids in their old order, matching the column slice.
    dictionary.filter_tokens(good_ids=keep.tolist())
    matrix = dtm.matrix[:, keep].tocsr()
    vocabulary = [dtm.vocabulary[i] for i in keep]
    return DocumentTermMatrix(matrix, dtm.doc_ids, vocabulary, dictionary)


def normalize_rows(weights: np.ndarray) -> np.ndarray:
    weights = np.asarray(weights, dtype=np.float64)
    totals = weights.sum(axis=1, keepdims=True)
    totals[totals == 0] = 1.0
    return weights / totals


class TopicModel:
    """
    Read-only result of a topic model fit.

    Attributes:
        term_topic_weights: (num_topics, len(vocabulary)); each row sums to 1.
        doc_topic_weights: (len(doc_ids), num_topics); each row sums to 1.
        vocabulary: Column labels of term_topic_weights.
        doc_ids: Row labels of doc_topic_weights.
        params: Fit settings (method, num_topics, seed, ...) and the corpus
            fingerprint.
    """

    TERM_TOPIC_FILE = "term_topic.parquet"
    DOC_TOPIC_FILE = "doc_topic.parquet"
    PARAMS_FILE = "params.json"

    def __init__(
        self,
        term_topic_weights: np.ndarray,
        doc_topic_weights: np.ndarray,
        vocabulary: list[str],
        doc_ids: list[str],
        params: Mapping[str, Any] | None = None,
    ):
        term_topic_weights = np.array(term_topic_weights, dtype=np.float64)
        doc_topic_weights = np.array(doc_topic_weights, dtype=np.float64)
        if term_topic_weights.shape[1] != len(vocabulary):
            raise ValueError("term_topic_weights columns must match vocabulary")
        if doc_topic_weights.shape != (len(doc_ids), term_topic_weights.shape[0]):
            raise ValueError("doc_topic_weights must be (len(doc_ids), num_topics)")
        term_topic_weights.setflags(write=False)
        doc_topic_weights.setflags(write=False)
        self._term_topic_weights = term_topic_weights
        self._doc_topic_weights = doc_topic_weights
        self._vocabulary = tuple(vocabulary)
        self._doc_ids = tuple(doc_ids)
        self._params = dict(params or {})

    @property
    def term_topic_weights(self) -> np.ndarray:
        return self._term_topic_weights

    @property
    def doc_topic_weights(self) -> np.ndarray:
        return self._doc_topic_weights

    @property
    def vocabulary(self) -> tuple[str, ...]:
        return self._vocabulary

    @property
    def doc_ids(self) -> tuple[str, ...]:
        return self._doc_ids

    @property
    def params(self) -> dict[str, Any]:
        return dict(self._params)

    @property
    def num_topics(self) -> int:
        return self._term_topic_weights.shape[0]

    def save(self, directory: str | Path) -> Path:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        pl.DataFrame(
            self.term_topic_weights, schema=list(self.vocabulary), orient="row"
        ).write_parquet(directory / self.TERM_TOPIC_FILE)
        pl.DataFrame({"chunk_id": list(self.doc_ids)}, schema={"chunk_id": pl.String}).hstack(
            pl.DataFrame(
                self.doc_topic_weights,
                schema=[f"topic_{k}" for k in range(self.num_topics)],
                orient="row",
            )
        ).write_parquet(directory / self.DOC_TOPIC_FILE)
        with open(directory / self.PARAMS_FILE, "w", encoding="utf-8") as f:
            json.dump(self._params, f, ensure_ascii=False, indent=2)
        logger.info("Saved topic model to %s", directory)
        return directory

    @classmethod
    def load(cls, directory: str | Path) -> "TopicModel":
        directory = Path(directory)
        try:
            term_topic = pl.read_parquet(directory / cls.TERM_TOPIC_FILE)
            doc_topic = pl.read_parquet(directory / cls.DOC_TOPIC_FILE)
            with open(directory / cls.PARAMS_FILE, encoding="utf-8") as f:
                params = json.load(f)
        except OSError as e:
            raise ConfigurationError(
                f"No saved topic model in {directory}: {e}", stage="inspector"
            ) from e
        return cls(
            term_topic.to_numpy(),
            doc_topic.drop("chunk_id").to_numpy(),
            term_topic.columns,
            doc_topic.get_column("chunk_id").to_list(),
            params,
        )

    def __repr__(self):
        return (
            f"TopicModel<topics={self.num_topics},terms={len(self.vocabulary)},"
            f"docs={len(self.doc_ids)},method={self._params.get('method')}>"
        )


def topic2dense(topic_probs, num_topics):
    d = {topic: prob for topic, prob in topic_probs}
    return [d[i] if i in d else 0.0 for i in range(num_topics)]


def _fit_gibbs(
    dtm: DocumentTermMatrix,
    num_topics: int,
    seed: int,
    burn_in: int,
    thinning: int,
    iterations: int,
    alpha: float,
    eta: float,
) -> tuple[np.ndarray, np.ndarray]:
    model = lda.LDA(
        n_topics=num_topics,
        n_iter=burn_in + iterations,
        alpha=alpha,
        eta=eta,
        random_state=seed,
        refresh=thinning,
    )
    model.fit(dtm.matrix)
    return model.topic_word_, model.doc_topic_


def _fit_variational(
    dtm: DocumentTermMatrix,
    num_topics: int,
    seed: int,
    iterations: int,
    passes: int,
    alpha: float | None,
    eta: float,
) -> tuple[np.ndarray, np.ndarray]:
    bows = dtm.bows()
    model = LdaModel(
        corpus=bows,
        id2word=dtm.dictionary,
        num_topics=num_topics,
        alpha=alpha if alpha is not None else "auto",
        eta=eta,
        iterations=iterations,
        passes=passes,
        eval_every=None,  # Don't evaluate model perplexity, takes too much time.
        random_state=seed,
    )
    doc_topic = np.array(
        [
            topic2dense(model.get_document_topics(b, minimum_probability=0.0), num_topics)
            for b in bows
        ]
    )
    return model.get_topics(), doc_topic


@log_duration("fit_topic_model")
def fit_topic_model(
    dtm: DocumentTermMatrix,
    num_topics: int = 25,
    seed: int = 1,
    burn_in: int = 100,
    thinning: int = 25,
    iterations: int = 500,
    method: str = "gibbs",
    alpha: float | None = None,
    eta: float = 0.1,
    passes: int = 10,
    fingerprint: str | None = None,
) -> TopicModel:
    """
    Fit a num_topics LDA model to the document-term matrix.

    Args:
        dtm: Matrix from build_matrix / prune_by_tfidf.
        num_topics: Number of topics K.
        seed: Random seed, passed unchanged to the library.
        burn_in: Gibbs sweeps discarded before the sampling phase.
        thinning: Interval, in sweeps, at which the Gibbs sampler logs its
            log-likelihood. Samples are not thinned: the weights come from
            the final sample.
        iterations: Gibbs sweeps after burn-in, or the per-document
            inference iterations for the variational method.
        method: "gibbs" (collapsed Gibbs sampling, lda package) or
            "variational" (gensim online variational Bayes).
        alpha: Document-topic prior. Defaults to 50 / K for Gibbs and to
            gensim's learned "auto" prior for the variational method.
        eta: Topic-term prior.
        passes: Passes over the corpus for the variational method.
        fingerprint: Corpus fingerprint stored with the result.

    Returns:
        TopicModel with row-stochastic term-topic and document-topic weights.

    Raises:
        ConfigurationError: invalid K or an empty matrix.
        FittingError: the library failed.
    """
    if num_topics < 2:
        raise ConfigurationError(f"num_topics must be >= 2, got {num_topics}")
    if dtm.shape[0] == 0 or dtm.shape[1] == 0 or dtm.matrix.sum() == 0:
        raise ConfigurationError(
            f"Cannot fit a topic model on an empty matrix {dtm!r}", stage="corpus"
        )

    params: dict[str, Any] = {
        "method": method,
        "num_topics": num_topics,
        "seed": seed,
        "eta": eta,
        "fingerprint": fingerprint,
    }
    try:
        if method == "gibbs":
            alpha = alpha if alpha is not None else 50 / num_topics
            params.update(
                alpha=alpha, burn_in=burn_in, thinning=thinning, iterations=iterations
            )
            term_topic, doc_topic = _fit_gibbs(
                dtm, num_topics, seed, burn_in, thinning, iterations, alpha, eta
            )
        elif method == "variational":
            params.update(alpha=alpha, iterations=iterations, passes=passes)
            term_topic, doc_topic = _fit_variational(
                dtm, num_topics, seed, iterations, passes, alpha, eta
            )
        else:
            raise ConfigurationError(f"Unknown topic model method {method!r}")
    except ConfigurationError:
        raise
    except Exception as e:
        raise FittingError(f"{method} LDA on {dtm!r}: {e}") from e

    return TopicModel(
        normalize_rows(term_topic),
        normalize_rows(doc_topic),
        dtm.vocabulary,
        dtm.doc_ids,
        params,
    )
