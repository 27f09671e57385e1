import logging
import shutil
import threading
from pathlib import Path
from typing import Any, Mapping, NamedTuple

import matplotlib.pyplot as plt

from lemma_topics.data_lib import (
    LemmatizedCorpus,
    iter_document_paths,
    lemmatize_corpus,
    write_corpus,
)
from lemma_topics.errors import CancelledError, ConfigurationError
from lemma_topics.gensim_lib import (
    DocumentTermMatrix,
    TopicModel,
    build_matrix,
    fit_topic_model,
    prune_by_tfidf,
)
from lemma_topics.nlp_utils import Annotator, load_annotator, load_stopwords
from lemma_topics.plotting import render_wordcloud, top_terms
from lemma_topics.utils import log_time, validate_config

logger = logging.getLogger(__name__)

MODEL_DIRNAME = "model"
WORDCLOUD_DIRNAME = "wordclouds"


class PipelineResult(NamedTuple):
    corpus: LemmatizedCorpus
    dtm: DocumentTermMatrix
    model: TopicModel
    output_dir: Path


def run_pipeline(
    config: Mapping[str, Any],
    annotator: Annotator | None = None,
    cancel_event: threading.Event | None = None,
) -> PipelineResult:
    """
    Run the whole recipe: read -> annotate -> filter & chunk -> DTM -> LDA.

    Args:
        config: A complete PipelineConfig, usually from utils.resolve_config.
        annotator: Pre-loaded annotator; loaded from the config when None.
        cancel_event: Stops lemmatization between documents when set.

    Returns:
        PipelineResult with the chunked corpus, the matrix and the fitted
        model. The companion corpus files, the saved model and optional
        word clouds are written to config["output_dir"].

    Raises:
        ConfigurationError: settings are invalid or nothing is left to model;
            raised before the topic model is fitted.
        CancelledError: cancel_event was set during lemmatization; no
            output is written.
        FittingError: the topic model library failed.
    """
    validate_config(config)
    output_dir = Path(config["output_dir"])

    paths = iter_document_paths(config["input_dir"])
    if not paths:
        raise ConfigurationError(
            f"No input documents in {config['input_dir']}", stage="reader"
        )
    logger.info("Found %d documents in %s", len(paths), config["input_dir"])

    # Resources are loaded up front so configuration mistakes surface before
    # the slow annotation pass.
    if annotator is None:
        annotator = load_annotator(
            config["tokenizer_type"], config["dictionary_type"], config["language"]
        )
    stopwords = load_stopwords(
        config["stopword_source"], config["language"], config["stopword_file"]
    )

    with log_time("lemmatize_corpus", extra={"documents": len(paths)}):
        corpus = lemmatize_corpus(
            paths,
            annotator,
            excluded_tags=config["excluded_tags"],
            chunk_size=config["chunk_size"],
            keep_remainder=config["keep_remainder"],
            cancel_event=cancel_event,
        )
    if cancel_event is not None and cancel_event.is_set():
        raise CancelledError(
            f"Cancelled with {len(corpus)} chunks lemmatized; "
            f"nothing was written to {output_dir}"
        )
    if not corpus:
        raise ConfigurationError(
            f"No chunks were produced from {len(paths)} documents "
            f"({len(corpus.skipped)} skipped); every document is shorter than "
            f"chunk_size={config['chunk_size']} lemmas or failed to process",
            stage="corpus",
        )
    write_corpus(corpus, output_dir)

    dtm = build_matrix(corpus, stopwords, config["min_global_frequency"])
    if config["tfidf_threshold"] is not None:
        dtm = prune_by_tfidf(dtm, config["tfidf_threshold"])
    logger.info("Document-term matrix: %d chunks x %d terms", *dtm.shape)

    model = fit_topic_model(
        dtm,
        num_topics=config["num_topics"],
        seed=config["seed"],
        burn_in=config["burn_in"],
        thinning=config["thinning"],
        iterations=config["iterations"],
        method=config["method"],
        alpha=config["alpha"],
        eta=config["eta"],
        passes=config["passes"],
        fingerprint=corpus.fingerprint(),
    )
    model.save(output_dir / MODEL_DIRNAME)

    cloud_dir = output_dir / WORDCLOUD_DIRNAME
    if cloud_dir.exists():
        shutil.rmtree(cloud_dir)
    for topic in range(model.num_topics):
        terms = top_terms(model, topic, config["top_n"])
        logger.info(
            "Topic %d: %s", topic, " ".join(f"{t}*{w:.3f}" for t, w in terms)
        )
        if config["wordclouds"]:
            fig = render_wordcloud(
                terms, cloud_dir / f"topic_{topic:03d}.png"
            )
            plt.close(fig)

    return PipelineResult(corpus, dtm, model, output_dir)
