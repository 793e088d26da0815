"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = BASE_DIR / "data"

# Vendor API (OpenAI or any OpenAI-compatible server, e.g. Ollama's /v1)
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
VENDOR_TIMEOUT = float(os.getenv("VENDOR_TIMEOUT", "30.0"))  # seconds, per call

# Embeddings
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "1536"))
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "100"))   # vendor cap is 100
EMBEDDING_BATCH_DELAY = float(os.getenv("EMBEDDING_BATCH_DELAY", "0.1"))
EMBEDDING_MAX_TOKENS = int(os.getenv("EMBEDDING_MAX_TOKENS", "8000"))  # model limit is 8192
EMBEDDING_COST_PER_1K = float(os.getenv("EMBEDDING_COST_PER_1K", "0.00002"))

# Chat completion
CHAT_MODEL = os.getenv("CHAT_MODEL", "gpt-3.5-turbo")
CHAT_COST_PER_1K = float(os.getenv("CHAT_COST_PER_1K", "0.002"))
CHAT_TEMPERATURE = float(os.getenv("CHAT_TEMPERATURE", "0.7"))
CHAT_MAX_TOKENS = int(os.getenv("CHAT_MAX_TOKENS", "500"))

# RAG parameters (character-based)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
MAX_CONTEXT_LENGTH = int(os.getenv("MAX_CONTEXT_LENGTH", "4000"))
RETRIEVAL_DEGRADE_ON_ERROR = os.getenv("RETRIEVAL_DEGRADE_ON_ERROR", "true").lower() in ("1", "true", "yes")

# Vector index
INDEX_NAME = os.getenv("INDEX_NAME", "ai-chatbot-embeddings")
INDEX_METRIC = os.getenv("INDEX_METRIC", "cosine")
INDEX_READY_MAX_ATTEMPTS = int(os.getenv("INDEX_READY_MAX_ATTEMPTS", "30"))
INDEX_READY_POLL_INTERVAL = float(os.getenv("INDEX_READY_POLL_INTERVAL", "2.0"))
INDEX_UPSERT_BATCH_SIZE = int(os.getenv("INDEX_UPSERT_BATCH_SIZE", "100"))
DELETE_SCAN_TOP_K = int(os.getenv("DELETE_SCAN_TOP_K", "10000"))
INDEX_CALL_TIMEOUT = float(os.getenv("INDEX_CALL_TIMEOUT", "30.0"))  # seconds, per call
# Empty string keeps the FAISS index in memory only
VECTOR_INDEX_DIR = os.getenv("VECTOR_INDEX_DIR", str(DATA_DIR))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
