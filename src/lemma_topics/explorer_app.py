import logging

import polars as pl
import streamlit as st

from lemma_topics.errors import PipelineError
from lemma_topics.gensim_lib import TopicModel
from lemma_topics.plotting import (
    document_topic_heatmap,
    render_wordcloud,
    top_terms,
    topic_terms_table,
)

logging.basicConfig(
    format="%(asctime)s : %(levelname)s : %(message)s", level=logging.INFO
)

st.set_page_config(layout="wide")
st.title("Lemmatized LDA topic model explorer")

st.sidebar.markdown("## Settings")
model_dir = st.sidebar.text_input(
    "Model directory", value="output/model", key="model_dir_option"
)
top_n = st.sidebar.number_input(
    "Terms per topic", min_value=1, max_value=200, value=20, key="top_n_option"
)
font_path = st.sidebar.text_input(
    "Word cloud font (needed for CJK terms)", value="", key="font_path_option"
)


@st.cache_resource
def load_model(path: str) -> TopicModel:
    return TopicModel.load(path)


try:
    model = load_model(model_dir)
except PipelineError as e:
    st.error(f"{e}\n\nRun `lemma-topics run INPUT_DIR` first or point to its model directory.")
    st.stop()

params = model.params
mc1, mc2, mc3, mc4, mc5 = st.columns(5)
mc1.metric("Topics", value=model.num_topics)
mc2.metric("Terms", value=len(model.vocabulary))
mc3.metric("Chunks", value=len(model.doc_ids))
mc4.metric("Docs", value=len({c.rsplit("_", 1)[0] for c in model.doc_ids}))
mc5.metric("Method", value=str(params.get("method")))

st.markdown("## Topic-term distribution")
st.dataframe(
    topic_terms_table(model, int(top_n))
    .with_columns(
        (pl.col("term") + "*" + pl.col("weight").round(3).cast(pl.String)).alias("entry")
    )
    .group_by("topic", maintain_order=True)
    .agg(pl.col("entry").str.join(" "))
)

st.markdown("## Word cloud")
selected_topic = st.selectbox(
    "Topic", options=list(range(model.num_topics)), key="topic_option"
)
fig = render_wordcloud(
    top_terms(model, selected_topic, int(top_n)), font_path=font_path or None
)
st.pyplot(fig)

st.markdown("## Document-topic matrix")
st.markdown("Mean topic weights of each source document's chunks.")
st.plotly_chart(document_topic_heatmap(model))

with st.expander("Fit parameters"):
    st.json(params)
