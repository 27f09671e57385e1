from pathlib import Path
from typing import Sequence

import matplotlib.pyplot as plt
import numpy as np
import plotly.express as px
import polars as pl
from plotly.graph_objs._figure import Figure  # type: ignore[import-not-found]
from wordcloud import WordCloud

from lemma_topics.gensim_lib import TopicModel


def rank_terms(
    weights: np.ndarray, vocabulary: Sequence[str], n: int = 10
) -> list[tuple[str, float]]:
    """
    The n highest weighted terms, descending; ties keep vocabulary order.

    Examples:
        >>> rank_terms(np.array([0.2, 0.5, 0.2, 0.1]), ["a", "b", "c", "d"], 3)
        [('b', 0.5), ('a', 0.2), ('c', 0.2)]
    """
    weights = np.asarray(weights)
    order = np.argsort(-weights, kind="stable")[:n]
    return [(vocabulary[i], float(weights[i])) for i in order]


def top_terms(model: TopicModel, topic_index: int, n: int = 10) -> list[tuple[str, float]]:
    if not 0 <= topic_index < model.num_topics:
        raise IndexError(
            f"Topic {topic_index} out of range for a {model.num_topics}-topic model"
        )
    return rank_terms(model.term_topic_weights[topic_index], model.vocabulary, n)


def topic_terms_table(model: TopicModel, n: int = 10) -> pl.DataFrame:
    """Top-n terms of every topic as a long table (topic, rank, term, weight)."""
    rows = [
        (topic, rank, term, weight)
        for topic in range(model.num_topics)
        for rank, (term, weight) in enumerate(top_terms(model, topic, n))
    ]
    return pl.DataFrame(
        rows,
        schema={
            "topic": pl.Int64,
            "rank": pl.Int64,
            "term": pl.String,
            "weight": pl.Float64,
        },
        orient="row",
    )


def render_wordcloud(
    terms: Sequence[tuple[str, float]],
    path: str | Path | None = None,
    font_path: str | None = None,
    width: int = 800,
    height: int = 400,
    random_state: int = 1,
) -> plt.Figure:
    """
    Render weighted terms as a word cloud.

    CJK terms need a font_path to a font that covers them; the bundled
    default font only has Latin glyphs.
    """
    wc = WordCloud(
        width=width,
        height=height,
        background_color="white",
        colormap="viridis",
        max_words=len(terms) or 1,
        font_path=font_path,
        random_state=random_state,
    ).generate_from_frequencies({term: weight for term, weight in terms})
    fig, ax = plt.subplots(figsize=(width / 100, height / 100))
    ax.imshow(wc, interpolation="bilinear")
    ax.axis("off")
    fig.tight_layout(pad=0)
    if path is not None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(path)
    return fig


def document_of(chunk_id: str) -> str:
    """
    Examples:
        >>> document_of("my_novel_012")
        'my_novel'
    """
    return chunk_id.rsplit("_", 1)[0]


def document_topic_means(model: TopicModel) -> pl.DataFrame:
    """Mean topic weights per source document, in corpus order."""
    return (
        pl.DataFrame(
            model.doc_topic_weights,
            schema=[f"topic_{k}" for k in range(model.num_topics)],
            orient="row",
        )
        .with_columns(
            pl.Series("document", [document_of(c) for c in model.doc_ids], dtype=pl.String)
        )
        .group_by("document", maintain_order=True)
        .mean()
    )


def document_topic_heatmap(model: TopicModel) -> Figure:
    means = document_topic_means(model)
    return px.imshow(
        means.drop("document").to_numpy(),
        x=[str(k) for k in range(model.num_topics)],
        y=means.get_column("document").to_list(),
        labels={"x": "topic", "y": "document", "color": "weight"},
        text_auto=".2f",
        aspect="auto",
    )
