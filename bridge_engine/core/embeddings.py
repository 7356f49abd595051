"""Task text embeddings for duplicate checks and example search."""

from openai import OpenAI

from bridge_engine.core.config import get_settings
from bridge_engine.core.logging import get_logger

logger = get_logger(__name__)


def _get_client() -> OpenAI:
    return OpenAI(api_key=get_settings().OPENAI_API_KEY)


def embed_text(text: str) -> list[float]:
    """
    Embed one task text with EMBEDDING_MODEL.

    Raises:
        ValueError: If the text is blank or the vector is not EMBEDDING_DIM long
        openai.OpenAIError: If the API call fails
    """
    if not text or not text.strip():
        raise ValueError("Task text is empty; cannot embed blank task text")

    settings = get_settings()
    response = _get_client().embeddings.create(model=settings.EMBEDDING_MODEL, input=[text])
    vector = response.data[0].embedding

    if len(vector) != settings.EMBEDDING_DIM:
        raise ValueError(
            f"Embedding dimension mismatch: expected {settings.EMBEDDING_DIM}, got {len(vector)}"
        )

    logger.debug(f"Embedded task text with {settings.EMBEDDING_MODEL}", extra={"chars": len(text)})
    return vector
