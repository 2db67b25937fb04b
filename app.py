import os
import tempfile

import streamlit as st
from dotenv import load_dotenv

from docsum.config import Settings, configure_logging
from docsum.pdf_loader import DocumentLoadError
from docsum.pipeline import summarize_document
from docsum.store import SummaryStore

load_dotenv()
configure_logging()

st.set_page_config(page_title="Document Summarizer", layout="wide")

st.title("📄 Document Summarizer")
st.caption("Sažimanje dugih dokumenata u jedan koherentan pregled.")

settings = Settings.from_env()

with st.sidebar:
    st.header("⚙️ Podešavanja")
    settings.chunk_max_size = st.number_input("Maksimalna veličina chunk-a (karakteri)", 1000, 32000,
                                              settings.chunk_max_size, 500)
    settings.chunk_min_size = st.number_input("Minimalna veličina chunk-a", 500, settings.chunk_max_size,
                                              min(settings.chunk_min_size, settings.chunk_max_size), 250)
    settings.overlap_sentences = st.number_input("Overlap (rečenice)", 0, 10, settings.overlap_sentences, 1)
    settings.max_chunks = st.number_input("Maksimalan broj chunkova", 1, 100, settings.max_chunks or 20, 1)
    settings.model = st.text_input("Model", value=settings.model)
    persist = st.checkbox("Sačuvaj sažetak", value=True)

tab_new, tab_saved = st.tabs(["Novi dokument", "Sačuvani sažeci"])

with tab_new:
    uploaded = st.file_uploader("Upload PDF dokument", type=["pdf"])  # noqa: E501
    if uploaded:
        suffix = os.path.splitext(uploaded.name)[1] or ".pdf"
        with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
            tmp.write(uploaded.read())
            tmp_path = tmp.name

        if st.button("Pokreni sažimanje"):
            try:
                with st.spinner("Obrađujem dokument..."):
                    result = summarize_document(tmp_path, settings=settings)
            except DocumentLoadError as e:
                st.error(str(e))
            else:
                result["record"]["fileName"] = uploaded.name
                if persist:
                    SummaryStore(settings.summary_dir).save(result["record"])
                st.success("Gotovo!" if not result["degraded"] else "Gotovo (delimično degradiran rezultat).")
                st.subheader("Konačni sažetak")
                st.markdown(result["final_summary"])
                with st.expander("Detalji parcijalnih sažetaka"):
                    st.write(f"Broj chunkova: {result['chunks']}")
                    for i, ps in enumerate(result["partial_summaries"], 1):
                        st.markdown(f"**Chunk {i}:** {ps}")
            finally:
                os.unlink(tmp_path)
    else:
        st.info("Upload-uj PDF da bi započeo.")

with tab_saved:
    records = SummaryStore(settings.summary_dir).list()
    if not records:
        st.info("Još nema sačuvanih sažetaka.")
    for record in records:
        name = record.get("fileName", "")
        date = (record.get("processedAt") or "").split("T")[0]
        with st.expander(f"{name.removesuffix('.pdf')} · {date}"):
            if record.get("error"):
                st.warning(record["error"])
            st.markdown(record["summaryText"])

st.markdown("---")
st.caption("Demo alat – sažeci nastaju automatski i mogu biti nepotpuni.")
