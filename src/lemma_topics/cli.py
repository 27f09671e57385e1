import argparse
import logging
import sys
from pathlib import Path

import matplotlib.pyplot as plt

from lemma_topics.data_lib import read_corpus
from lemma_topics.errors import PipelineError
from lemma_topics.gensim_lib import TopicModel
from lemma_topics.pipeline import MODEL_DIRNAME, run_pipeline
from lemma_topics.plotting import render_wordcloud, top_terms
from lemma_topics.presets import DEFAULT_CONFIG, PRESETS, STOPWORD_SOURCES, TOPIC_METHODS
from lemma_topics.utils import resolve_config

logger = logging.getLogger("lemma_topics.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lemma-topics",
        description="Lemmatize a folder of texts, chunk it and fit an LDA topic model.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="run the full pipeline")
    run.add_argument("input_dir", help="directory of UTF-8 text files")
    run.add_argument("-o", "--output-dir", dest="output_dir")
    run.add_argument("--preset", choices=list(PRESETS))
    run.add_argument("--language")
    run.add_argument("--tokenizer-type", dest="tokenizer_type")
    run.add_argument("--dictionary-type", dest="dictionary_type", help="spaCy model or MeCab dictionary")
    run.add_argument(
        "--exclude-tag",
        dest="excluded_tags",
        action="append",
        help=f"POS tag to drop, repeatable (default: {' '.join(DEFAULT_CONFIG['excluded_tags'])})",
    )
    run.add_argument("--chunk-size", dest="chunk_size", type=int)
    run.add_argument(
        "--keep-remainder",
        dest="keep_remainder",
        action="store_const",
        const=True,
        help="keep each document's trailing short chunk",
    )
    run.add_argument("--min-frequency", dest="min_global_frequency", type=int)
    run.add_argument("-k", "--topics", dest="num_topics", type=int)
    run.add_argument("--method", choices=TOPIC_METHODS)
    run.add_argument("--seed", type=int)
    run.add_argument("--burn-in", dest="burn_in", type=int)
    run.add_argument(
        "--thinning",
        type=int,
        help="Gibbs log-likelihood logging interval; the final sample is kept, not thinned samples",
    )
    run.add_argument("--iterations", type=int)
    run.add_argument("--alpha", type=float)
    run.add_argument("--eta", type=float)
    run.add_argument("--passes", type=int)
    run.add_argument("--stopwords", dest="stopword_source", choices=STOPWORD_SOURCES)
    run.add_argument("--stopword-file", dest="stopword_file")
    run.add_argument("--tfidf-threshold", dest="tfidf_threshold", type=float)
    run.add_argument("--top-n", dest="top_n", type=int)
    run.add_argument("--wordclouds", action="store_const", const=True)

    inspect = sub.add_parser("inspect", help="show the top terms of a saved model")
    inspect.add_argument("model_dir")
    inspect.add_argument("--topic", type=int, help="only this topic")
    inspect.add_argument("--top-n", dest="top_n", type=int, default=10)
    inspect.add_argument("--wordcloud", help="PNG path; requires --topic")
    inspect.add_argument("--font-path", dest="font_path")
    inspect.add_argument(
        "--corpus-dir",
        dest="corpus_dir",
        help="directory with the companion corpus files (default: parent of model_dir)",
    )
    return parser


RUN_KEYS = (
    "input_dir",
    "output_dir",
    "language",
    "tokenizer_type",
    "dictionary_type",
    "excluded_tags",
    "chunk_size",
    "keep_remainder",
    "min_global_frequency",
    "num_topics",
    "method",
    "seed",
    "burn_in",
    "thinning",
    "iterations",
    "alpha",
    "eta",
    "passes",
    "stopword_source",
    "stopword_file",
    "tfidf_threshold",
    "top_n",
    "wordclouds",
)


def run_command(args: argparse.Namespace) -> int:
    config = resolve_config(args.preset, {key: getattr(args, key) for key in RUN_KEYS})
    result = run_pipeline(config)
    print(
        f"{len(result.corpus)} chunks, {result.dtm.shape[1]} terms, "
        f"{result.model.num_topics} topics -> {result.output_dir / MODEL_DIRNAME}"
    )
    return 0


def inspect_command(args: argparse.Namespace) -> int:
    model = TopicModel.load(args.model_dir)
    corpus_dir = Path(args.corpus_dir) if args.corpus_dir else Path(args.model_dir).parent
    fingerprint = model.params.get("fingerprint")
    if fingerprint is not None:
        try:
            corpus = read_corpus(corpus_dir)
        except PipelineError as e:
            logger.info("Not checking corpus files: %s", e)
        else:
            if corpus.fingerprint() != fingerprint:
                logger.warning(
                    "Corpus files in %s do not match the corpus this model was fitted on",
                    corpus_dir,
                )

    if args.wordcloud and args.topic is None:
        raise SystemExit("--wordcloud requires --topic")
    topics = range(model.num_topics) if args.topic is None else [args.topic]
    for topic in topics:
        try:
            terms = top_terms(model, topic, args.top_n)
        except IndexError as e:
            logger.error("%s", e)
            return 1
        print(f"{topic}: " + " ".join(f"{t}*{w:.3f}" for t, w in terms))
        if args.wordcloud:
            plt.close(render_wordcloud(terms, args.wordcloud, font_path=args.font_path))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        format="%(asctime)s : %(levelname)s : %(message)s",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )
    try:
        if args.command == "run":
            return run_command(args)
        return inspect_command(args)
    except PipelineError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
