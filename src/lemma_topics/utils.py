import logging
import os
import pickle
import tempfile
import time
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Generator, Iterable, Mapping, Optional

import xxhash
from filelock import FileLock

from lemma_topics.errors import ConfigurationError
from lemma_topics.presets import (
    DEFAULT_CONFIG,
    PRESETS,
    STOPWORD_SOURCES,
    TOPIC_METHODS,
    PipelineConfig,
)

logger = logging.getLogger("lemma_topics.utils")


def _format_fields(fields: Mapping[str, Any]) -> str:
    return " ".join(f"{k}={v}" for k, v in fields.items())


@contextmanager
def log_time(
    stage: str,
    *,
    logger: Optional[logging.Logger] = None,
    level: int = logging.INFO,
    extra: dict | None = None,
) -> Generator[None, None, None]:
    """
    Log the start and elapsed time of a pipeline stage.

    Lines read `START stage=<stage> k=v ...` and
    `DONE stage=<stage> elapsed=1.234s k=v ...`. A stage left through an
    exception logs `FAILED` at WARNING instead of `DONE`; the exception is
    re-raised.

    Args:
        stage: Stage name, e.g. "lemmatize_corpus".
        logger: Defaults to the package logger.
        level: Level of the START/DONE lines.
        extra: Fields appended as key=value pairs.
    """
    log = logger if logger is not None else logging.getLogger("lemma_topics")
    fields = _format_fields(extra or {})
    start = time.perf_counter()
    log.log(level, "START stage=%s %s", stage, fields)
    try:
        yield
    except BaseException:
        elapsed = time.perf_counter() - start
        log.warning("FAILED stage=%s elapsed=%.3fs %s", stage, elapsed, fields)
        raise
    elapsed = time.perf_counter() - start
    log.log(level, "DONE stage=%s elapsed=%.3fs %s", stage, elapsed, fields)


def log_duration(
    stage: Optional[str] = None,
    *,
    logger: Optional[logging.Logger] = None,
    level: int = logging.INFO,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator form of log_time; the stage defaults to the function name.

        @log_duration("fit_topic_model")
        def fit_topic_model(...):
            ...
    """

    def deco(func: Callable[..., Any]) -> Callable[..., Any]:
        stage_name = stage or func.__qualname__

        @wraps(func)
        def wrapper(*args, **kwargs):
            with log_time(
                stage_name,
                logger=logger or logging.getLogger(func.__module__),
                level=level,
            ):
                return func(*args, **kwargs)

        return wrapper

    return deco


def _require_int(config: Mapping[str, Any], key: str, minimum: int) -> None:
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigurationError(
            f"{key} must be an integer >= {minimum}, got {value!r}"
        )


def validate_config(config: Mapping[str, Any]) -> None:
    """Raise ConfigurationError if any run parameter is out of range."""
    unknown = set(config) - set(DEFAULT_CONFIG)
    if unknown:
        raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")

    _require_int(config, "chunk_size", 1)
    _require_int(config, "min_global_frequency", 1)
    _require_int(config, "num_topics", 2)
    _require_int(config, "seed", 0)
    _require_int(config, "burn_in", 0)
    _require_int(config, "thinning", 1)
    _require_int(config, "iterations", 1)
    _require_int(config, "passes", 1)
    _require_int(config, "top_n", 1)

    tags = config["excluded_tags"]
    if not isinstance(tags, (list, tuple)) or not all(isinstance(t, str) for t in tags):
        raise ConfigurationError(
            f"excluded_tags must be a list of POS tag strings, got {tags!r}"
        )
    if config["method"] not in TOPIC_METHODS:
        raise ConfigurationError(
            f"method must be one of {TOPIC_METHODS}, got {config['method']!r}"
        )
    if config["stopword_source"] not in STOPWORD_SOURCES:
        raise ConfigurationError(
            f"stopword_source must be one of {STOPWORD_SOURCES}, "
            f"got {config['stopword_source']!r}"
        )
    if config["stopword_source"] == "file" and not config["stopword_file"]:
        raise ConfigurationError("stopword_source 'file' requires stopword_file")
    threshold = config["tfidf_threshold"]
    if threshold is not None and threshold < 0:
        raise ConfigurationError(f"tfidf_threshold must be >= 0, got {threshold}")
    if config["alpha"] is not None and config["alpha"] <= 0:
        raise ConfigurationError(f"alpha must be > 0, got {config['alpha']}")
    if config["eta"] <= 0:
        raise ConfigurationError(f"eta must be > 0, got {config['eta']}")


def resolve_config(
    preset: str | None = None, overrides: Mapping[str, Any] | None = None
) -> PipelineConfig:
    """
    Merge DEFAULT_CONFIG, an optional named preset and explicit overrides.

    Overrides whose value is None are ignored so that unset CLI flags do not
    clobber preset values; use the preset or defaults to express "no value".

    Examples:
        >>> resolve_config(overrides={"num_topics": 10})["num_topics"]
        10
        >>> resolve_config("Japanese (MeCab/UniDic)")["tokenizer_type"]
        'MeCab'
    """
    config: dict[str, Any] = dict(DEFAULT_CONFIG)
    if preset is not None:
        if preset not in PRESETS:
            raise ConfigurationError(
                f"Unknown preset {preset!r}; choose from {', '.join(PRESETS)}"
            )
        config.update(PRESETS[preset])
    for key, value in (overrides or {}).items():
        if value is not None:
            config[key] = value
    validate_config(config)
    return config  # type: ignore[return-value]


def compute_fingerprint(ids: Iterable[str], texts: Iterable[str]) -> str:
    """
    Order-sensitive digest of a chunked corpus, stored with fitted models so
    a model can be matched against the companion corpus files it came from.
    """
    payload = (tuple(ids), tuple(texts))
    return xxhash.xxh3_64_hexdigest(pickle.dumps(payload, pickle.HIGHEST_PROTOCOL))


def write_files_atomically(
    directory: Path, files: Mapping[str, Iterable[str]], timeout: float = 30
) -> list[Path]:
    """
    Write line-oriented UTF-8 files into directory, replacing previous content.

    Every file is first written to a temporary sibling and only moved into
    place once all of them were written, so a crash never leaves one file
    updated and its companion stale. A lock file serializes concurrent writers.
    """
    directory.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(directory / ".write.lock"), timeout=timeout)
    staged: list[tuple[str, Path]] = []
    with lock:
        try:
            for name, lines in files.items():
                with tempfile.NamedTemporaryFile(
                    "w",
                    encoding="utf-8",
                    newline="\n",
                    dir=directory,
                    prefix=f".{name}.",
                    delete=False,
                ) as f:
                    staged.append((name, Path(f.name)))
                    for line in lines:
                        if "\n" in line:
                            raise ValueError(f"Line for {name} contains a newline")
                        f.write(line + "\n")
        except BaseException:
            for _, tmp in staged:
                tmp.unlink(missing_ok=True)
            raise
        targets = []
        for name, tmp in staged:
            target = directory / name
            os.replace(tmp, target)
            targets.append(target)
    logger.info("Wrote %s", ", ".join(str(t) for t in targets))
    return targets
