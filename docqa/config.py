"""Application configuration settings.

This module defines the Settings dataclass that loads configuration
from environment variables.
"""

from dataclasses import dataclass
import os

from docqa.errors import ConfigurationError, ConfigurationMissing

VECTOR_BACKENDS = {"milvus", "faiss"}
VECTOR_METRICS = {"COSINE", "IP", "L2"}


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        ibm_cloud_api_key: IBM Cloud API key for authentication.
        watsonx_region: Watsonx.ai service region.
        watsonx_project_id: Watsonx.ai project ID.
        watsonx_embed_model: Primary (remote) embedding model ID.
        watsonx_gen_model: Chat model ID; empty disables generation.
        watsonx_gen_fallback_models: Chat models tried in order when the
            primary chat model fails.
        local_embed_model: Fallback sentence-transformers model name.
        vector_backend: "milvus" or "faiss".
        milvus_host: Milvus database host.
        milvus_port: Milvus database port.
        milvus_db: Milvus database name (optional).
        milvus_tls: Whether to use TLS for Milvus.
        faiss_dir: Directory holding FAISS indexes and metadata.
        vector_metric: Index metric, one of COSINE, IP or L2.
        relevance_threshold: Score cutoff for the relevance filter.
        top_k: Default number of results to retrieve.
        debug_excerpt_chars: Per-chunk truncation of the debug view.
        temperature: Generation temperature.
        max_new_tokens: Generation output bound.
        generation_max_retries: Retries for a failed generation call.
        generation_timeout: Seconds allowed per generation attempt.
        embedding_max_retries: Retries for a failed remote embedding call.
        embedding_timeout: Seconds allowed per remote embedding attempt.
        json_index_name: Index holding JSON-sourced chunks.
        json_key_prefix: Id prefix for JSON-sourced chunks.
        pdf_index_name: Index holding PDF-sourced chunks.
        pdf_key_prefix: Id prefix for PDF-sourced chunks.
        json_content_field: Field of JSON records holding the text.
        json_title_field: Field of JSON records holding the title.
        json_chunk_size: Chunk size for JSON documents.
        json_chunk_overlap: Chunk overlap for JSON documents.
        pdf_chunk_size: Chunk size for PDF documents.
        pdf_chunk_overlap: Chunk overlap for PDF documents.
    """

    ibm_cloud_api_key: str
    watsonx_region: str
    watsonx_project_id: str
    watsonx_embed_model: str
    watsonx_gen_model: str
    watsonx_gen_fallback_models: list[str]
    local_embed_model: str

    vector_backend: str
    milvus_host: str
    milvus_port: int
    milvus_db: str | None
    milvus_tls: bool
    faiss_dir: str

    vector_metric: str
    relevance_threshold: float
    top_k: int
    debug_excerpt_chars: int

    temperature: float
    max_new_tokens: int
    generation_max_retries: int
    generation_timeout: float
    embedding_max_retries: int
    embedding_timeout: float

    json_index_name: str
    json_key_prefix: str
    pdf_index_name: str
    pdf_key_prefix: str

    json_content_field: str
    json_title_field: str
    json_chunk_size: int
    json_chunk_overlap: int
    pdf_chunk_size: int
    pdf_chunk_overlap: int

    @property
    def watsonx_url(self) -> str:
        return f"https://{self.watsonx_region}.ml.cloud.ibm.com"

    @staticmethod
    def _get_bool(value: str | None, default: bool = False) -> bool:
        """Convert string value to boolean.

        Args:
            value: String value to convert.
            default: Default value if value is None.

        Returns:
            Boolean value.
        """
        if value is None:
            return default
        return value.lower() in {"1", "true", "t", "yes", "y"}

    @staticmethod
    def _get_list(value: str | None) -> list[str]:
        if not value:
            return []
        return [item.strip() for item in value.split(",") if item.strip()]

    @staticmethod
    def _get_number(name: str, default: str, kind: type):
        raw = os.getenv(name, default).strip()
        try:
            return kind(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"{name} must be a valid {kind.__name__}, got {raw!r}"
            ) from e

    @staticmethod
    def _get_choice(name: str, default: str, choices: set[str]) -> str:
        value = os.getenv(name, default).strip()
        normalized = value.lower()
        if normalized not in choices:
            normalized = value.upper()
        if normalized not in choices:
            raise ConfigurationError(
                f"{name} must be one of {sorted(choices)}, got {value!r}"
            )
        return normalized

    @classmethod
    def from_env(cls) -> "Settings":
        """Create Settings instance from environment variables.

        Returns:
            Settings instance with values loaded from environment.

        Raises:
            ConfigurationError: If a numeric or enumerated value is malformed.
        """
        return cls(
            ibm_cloud_api_key=os.getenv("IBM_CLOUD_API_KEY", ""),
            watsonx_region=os.getenv("WATSONX_REGION", "us-south"),
            watsonx_project_id=os.getenv("WATSONX_PROJECT_ID", ""),
            watsonx_embed_model=os.getenv(
                "WATSONX_EMBED_MODEL",
                "ibm/granite-embedding-30m-english",
            ),
            watsonx_gen_model=os.getenv("WATSONX_GEN_MODEL", ""),
            watsonx_gen_fallback_models=cls._get_list(
                os.getenv("WATSONX_GEN_FALLBACK_MODELS")
            ),
            local_embed_model=os.getenv(
                "LOCAL_EMBED_MODEL", "sentence-transformers/all-MiniLM-L6-v2"
            ),
            vector_backend=cls._get_choice("VECTOR_BACKEND", "milvus", VECTOR_BACKENDS),
            milvus_host=os.getenv("MILVUS_HOST", "localhost"),
            milvus_port=cls._get_number("MILVUS_PORT", "19530", int),
            milvus_db=os.getenv("MILVUS_DB"),
            milvus_tls=cls._get_bool(os.getenv("MILVUS_TLS"), False),
            faiss_dir=os.getenv("FAISS_DIR", "data/faiss"),
            vector_metric=cls._get_choice("VECTOR_METRIC", "COSINE", VECTOR_METRICS),
            relevance_threshold=cls._get_number("RELEVANCE_THRESHOLD", "0.5", float),
            top_k=cls._get_number("TOP_K", "3", int),
            debug_excerpt_chars=cls._get_number("DEBUG_EXCERPT_CHARS", "300", int),
            temperature=cls._get_number("TEMPERATURE", "0.3", float),
            max_new_tokens=cls._get_number("MAX_NEW_TOKENS", "300", int),
            generation_max_retries=cls._get_number("GENERATION_MAX_RETRIES", "5", int),
            generation_timeout=cls._get_number("GENERATION_TIMEOUT", "60", float),
            embedding_max_retries=cls._get_number("EMBEDDING_MAX_RETRIES", "3", int),
            embedding_timeout=cls._get_number("EMBEDDING_TIMEOUT", "10", float),
            json_index_name=os.getenv("JSON_INDEX_NAME", "articles_embeddings"),
            json_key_prefix=os.getenv("JSON_KEY_PREFIX", "articles:"),
            pdf_index_name=os.getenv("PDF_INDEX_NAME", "articles_pdf_embeddings"),
            pdf_key_prefix=os.getenv("PDF_KEY_PREFIX", "articles-pdf:"),
            json_content_field=os.getenv("JSON_CONTENT_FIELD", "content"),
            json_title_field=os.getenv("JSON_TITLE_FIELD", "title"),
            json_chunk_size=cls._get_number("JSON_CHUNK_SIZE", "600", int),
            json_chunk_overlap=cls._get_number("JSON_CHUNK_OVERLAP", "50", int),
            pdf_chunk_size=cls._get_number("PDF_CHUNK_SIZE", "500", int),
            pdf_chunk_overlap=cls._get_number("PDF_CHUNK_OVERLAP", "100", int),
        )

    def validate(self) -> None:
        """Check startup requirements once, before any query runs.

        The chat model is not required here: the answer generator re-checks
        it on every call and degrades to a canned answer.

        Raises:
            ConfigurationMissing: If required credentials are absent.
            ConfigurationError: If a numeric setting is out of range.
        """
        missing = [
            name
            for name, value in (
                ("IBM_CLOUD_API_KEY", self.ibm_cloud_api_key),
                ("WATSONX_PROJECT_ID", self.watsonx_project_id),
                ("WATSONX_EMBED_MODEL", self.watsonx_embed_model),
            )
            if not value.strip()
        ]
        if missing:
            raise ConfigurationMissing(missing)
        if self.top_k < 1:
            raise ConfigurationError("TOP_K must be at least 1")
        if self.debug_excerpt_chars < 1:
            raise ConfigurationError("DEBUG_EXCERPT_CHARS must be at least 1")
