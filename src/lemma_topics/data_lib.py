import logging
import threading
from pathlib import Path
from typing import Iterable, Iterator, NamedTuple

import polars as pl
from tqdm import tqdm

from lemma_topics.errors import AnnotationError, ConfigurationError, ReadError
from lemma_topics.nlp_utils import PROPER_NOUN, Annotator
from lemma_topics.utils import compute_fingerprint, write_files_atomically

logger = logging.getLogger(__name__)

TEXTS_FILENAME = "texts_lemmatized.txt"
IDS_FILENAME = "text_IDs.txt"


class Document(NamedTuple):
    doc_id: str
    text: str


class Chunk(NamedTuple):
    chunk_id: str
    text: str


class LemmatizedCorpus:
    """
    Ordered (chunk id, chunk text) pairs for a whole batch of documents.

    Chunks are only ever added per document, all at once, so identifiers and
    texts cannot drift apart. Documents that failed to read or annotate are
    kept in `skipped` together with the reason.
    """

    def __init__(self, chunks: Iterable[Chunk] = ()):
        self.chunks: list[Chunk] = list(chunks)
        self.skipped: list[tuple[str, str]] = []

    def add_document(self, chunks: list[Chunk]) -> None:
        self.chunks.extend(chunks)

    def skip_document(self, doc_id: str, reason: str) -> None:
        self.skipped.append((doc_id, reason))

    @property
    def ids(self) -> list[str]:
        return [c.chunk_id for c in self.chunks]

    @property
    def texts(self) -> list[str]:
        return [c.text for c in self.chunks]

    def fingerprint(self) -> str:
        return compute_fingerprint(self.ids, self.texts)

    def to_polars(self) -> pl.DataFrame:
        return pl.DataFrame(
            {"chunk_id": self.ids, "text": self.texts},
            schema={"chunk_id": pl.String, "text": pl.String},
        )

    def __len__(self) -> int:
        return len(self.chunks)

    def __iter__(self) -> Iterator[Chunk]:
        return iter(self.chunks)

    def __repr__(self):
        return f"LemmatizedCorpus<chunks={len(self.chunks)},skipped={len(self.skipped)}>"


def iter_document_paths(directory: str | Path) -> list[Path]:
    """
    List the immediate, non-hidden files of directory, sorted by name.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError(
            f"Input directory {directory} does not exist", stage="reader"
        )
    paths = sorted(
        p for p in directory.iterdir() if p.is_file() and not p.name.startswith(".")
    )
    # Chunk ids are built from the stem, so a.txt and a.md would collide.
    by_stem: dict[str, list[str]] = {}
    for p in paths:
        by_stem.setdefault(p.stem, []).append(p.name)
    clashes = [names for names in by_stem.values() if len(names) > 1]
    if clashes:
        raise ConfigurationError(
            "Documents must have distinct names without their extension: "
            + "; ".join(", ".join(names) for names in clashes),
            stage="reader",
        )
    return paths


def read_document(path: str | Path) -> Document:
    """
    Read a UTF-8 text file and join its lines with single spaces.

    Raises:
        ReadError: the file is missing, unreadable or not valid UTF-8.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            text = " ".join(f.read().splitlines())
    except (OSError, UnicodeDecodeError) as e:
        raise ReadError(f"Could not read {path}: {e}") from e
    return Document(path.stem, text)


def filter_lemmas(
    table: pl.DataFrame, excluded_tags: Iterable[str] = (PROPER_NOUN,)
) -> list[str]:
    """
    Return the lemma stream of an annotation table.

    Keeps, in table order, the lemma of every token whose tag is not in
    excluded_tags and whose lemma is present. Tokens without a tag are kept.

    Examples:
        >>> t = pl.DataFrame(
        ...     {"token": ["Anna", "ran", "?"], "lemma": ["Anna", "run", None],
        ...      "pos": ["PROPN", "VERB", "PUNCT"], "position": [0, 1, 2]}
        ... )
        >>> filter_lemmas(t)
        ['run']
    """
    keep = pl.col("lemma").is_not_null() & (pl.col("lemma") != "")
    excluded = sorted(set(excluded_tags))
    if excluded:
        keep = keep & ~pl.col("pos").is_in(excluded).fill_null(False)
    return table.filter(keep).get_column("lemma").to_list()


def split_list(lst: list[str], n: int):
    """
    Yield successive n-sized chunks from lst.

    Examples:
        >>> list(split_list(['a','b','c','d'], 2))
        [['a', 'b'], ['c', 'd']]
    """
    for i in range(0, len(lst), n):
        yield lst[i : i + n]


def chunk_lemmas(
    lemmas: list[str],
    doc_id: str,
    chunk_size: int = 1000,
    keep_remainder: bool = False,
) -> list[Chunk]:
    """
    Partition a lemma stream into non-overlapping chunks of chunk_size lemmas.

    A stream of n lemmas yields floor(n / chunk_size) chunks. The trailing
    remainder is dropped, so documents shorter than chunk_size contribute
    nothing, unless keep_remainder is set, in which case it becomes one
    final, shorter chunk.

    Examples:
        >>> chunk_lemmas(["a", "b", "c", "d", "e"], "doc", chunk_size=2)
        [Chunk(chunk_id='doc_000', text='a b'), Chunk(chunk_id='doc_001', text='c d')]
        >>> chunk_lemmas(["a", "b", "c"], "doc", chunk_size=2, keep_remainder=True)[-1]
        Chunk(chunk_id='doc_001', text='c')
    """
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size < 1:
        raise ConfigurationError(
            f"chunk_size must be a positive integer, got {chunk_size!r}"
        )
    if not keep_remainder:
        lemmas = lemmas[: len(lemmas) // chunk_size * chunk_size]
    return [
        Chunk(f"{doc_id}_{i:03d}", " ".join(chunk))
        for i, chunk in enumerate(split_list(lemmas, chunk_size))
    ]


def lemmatize_document(
    document: Document,
    annotator: Annotator,
    excluded_tags: Iterable[str] = (PROPER_NOUN,),
    chunk_size: int = 1000,
    keep_remainder: bool = False,
) -> list[Chunk]:
    table = annotator.annotate(document.text)
    lemmas = filter_lemmas(table, excluded_tags)
    logger.debug(
        "%s: %d tokens, %d lemmas kept", document.doc_id, table.height, len(lemmas)
    )
    return chunk_lemmas(lemmas, document.doc_id, chunk_size, keep_remainder)


def lemmatize_corpus(
    paths: Iterable[Path],
    annotator: Annotator,
    excluded_tags: Iterable[str] = (PROPER_NOUN,),
    chunk_size: int = 1000,
    keep_remainder: bool = False,
    cancel_event: threading.Event | None = None,
) -> LemmatizedCorpus:
    """
    Read, annotate, filter and chunk every document, in the given order.

    A document that cannot be read or annotated is logged and skipped; it
    contributes no chunks and the pairing of the other documents is not
    affected. When cancel_event is set the batch stops before the next
    document and the chunks gathered so far are returned.
    """
    excluded_tags = frozenset(excluded_tags)
    corpus = LemmatizedCorpus()
    paths = list(paths)
    for n_done, path in enumerate(tqdm(paths, desc="Lemmatizing", unit="doc")):
        if cancel_event is not None and cancel_event.is_set():
            logger.warning(
                "Lemmatization cancelled after %d of %d documents", n_done, len(paths)
            )
            break
        try:
            document = read_document(path)
            chunks = lemmatize_document(
                document, annotator, excluded_tags, chunk_size, keep_remainder
            )
        except (ReadError, AnnotationError) as e:
            logger.warning("Skipping %s: %s", path, e)
            corpus.skip_document(Path(path).stem, str(e))
            continue
        if not chunks:
            logger.info(
                "%s is shorter than %d lemmas and contributes no chunks",
                path,
                chunk_size,
            )
        corpus.add_document(chunks)
    logger.info(
        "Lemmatized corpus: %d chunks, %d documents skipped",
        len(corpus),
        len(corpus.skipped),
    )
    return corpus


def write_corpus(corpus: LemmatizedCorpus, directory: str | Path) -> tuple[Path, Path]:
    """
    Persist the corpus as the two companion files, replacing any earlier run.
    """
    texts_path, ids_path = write_files_atomically(
        Path(directory),
        {TEXTS_FILENAME: corpus.texts, IDS_FILENAME: corpus.ids},
    )
    return texts_path, ids_path


def read_corpus(directory: str | Path) -> LemmatizedCorpus:
    """
    Load the companion files written by write_corpus.

    Raises:
        ConfigurationError: a file is missing or the line counts differ.
    """
    directory = Path(directory)
    try:
        texts = (directory / TEXTS_FILENAME).read_text(encoding="utf-8").splitlines()
        ids = (directory / IDS_FILENAME).read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise ConfigurationError(f"Could not read corpus files: {e}", stage="corpus") from e
    if len(texts) != len(ids):
        raise ConfigurationError(
            f"{TEXTS_FILENAME} has {len(texts)} lines but {IDS_FILENAME} has {len(ids)}",
            stage="corpus",
        )
    return LemmatizedCorpus(Chunk(i, t) for i, t in zip(ids, texts))
