from dataclasses import dataclass
from datetime import timedelta

from cobra_chat.config import Settings
from cobra_chat.services.chat_service import ChatService
from cobra_chat.services.chat_store import ChatStore
from cobra_chat.services.document_processor import DocumentProcessorService
from cobra_chat.services.guidelines import GuidelinesRetriever
from cobra_chat.services.llm_service import LLMService, build_llm_service
from cobra_chat.services.persistence import InMemoryStore, KeyValueStore, SupabaseStore
from cobra_chat.services.quota_tracker import QuotaTracker
from cobra_chat.services.semantic_cache import SemanticCache
from cobra_chat.services.vector_codec import GeminiEmbedder, HashEncoder, VectorCodec
from cobra_chat.utils.logger import logger


@dataclass
class ServiceContainer:
    """Every long-lived service, built once at startup and shared by all requests."""
    settings: Settings
    db: KeyValueStore
    codec: VectorCodec
    cache: SemanticCache
    quota: QuotaTracker
    guidelines: GuidelinesRetriever
    llm: LLMService
    documents: DocumentProcessorService
    chats: ChatStore
    chat_service: ChatService


def build_store(settings: Settings) -> KeyValueStore:
    if settings.SUPABASE_URL and settings.SUPABASE_KEY:
        return SupabaseStore(settings.SUPABASE_URL, settings.SUPABASE_KEY, settings.SUPABASE_TABLE)
    logger.warning("Supabase not configured, using in-memory store (data is lost on restart).")
    return InMemoryStore()


def build_services(settings: Settings, db: KeyValueStore = None, codec: VectorCodec = None, llm: LLMService = None) -> ServiceContainer:
    """Wires the services together. Collaborators can be swapped in (tests, workers)."""
    db = db or build_store(settings)
    codec = codec or VectorCodec(
        remote=GeminiEmbedder(settings.GEMINI_API_KEY, settings.GEMINI_EMBEDDING_MODEL),
        local=HashEncoder(settings.LOCAL_EMBEDDING_DIMENSION),
    )
    llm = llm or build_llm_service(
        settings.GEMINI_API_KEY, settings.GEMINI_CHAT_MODEL,
        settings.GROQ_API_KEY, settings.GROQ_CHAT_MODEL,
    )

    cache = SemanticCache(
        db, codec,
        remote_threshold=settings.CACHE_THRESHOLD_REMOTE,
        local_threshold=settings.CACHE_THRESHOLD_LOCAL,
    )
    quota = QuotaTracker(
        db,
        limit=settings.CHAT_LIMIT,
        window=timedelta(hours=settings.CHAT_LIMIT_WINDOW_HOURS),
    )
    guidelines = GuidelinesRetriever(db, codec, threshold=settings.GUIDELINES_THRESHOLD)
    documents = DocumentProcessorService(settings.MAX_FILE_SIZE_MB, settings.MAX_DOCUMENT_CHARS)
    chats = ChatStore(db, max_history=settings.MAX_HISTORY_MESSAGES)
    chat_service = ChatService(
        chats, cache, quota, guidelines, llm,
        max_message_length=settings.MAX_MESSAGE_LENGTH,
        guidelines_top_k=settings.GUIDELINES_TOP_K,
    )
    return ServiceContainer(
        settings=settings,
        db=db,
        codec=codec,
        cache=cache,
        quota=quota,
        guidelines=guidelines,
        llm=llm,
        documents=documents,
        chats=chats,
        chat_service=chat_service,
    )
