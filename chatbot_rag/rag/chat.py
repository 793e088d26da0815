"""Knowledge-base chat: retrieval, prompting and cost accounting."""
from dataclasses import dataclass, field
from typing import Any, Dict, List

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as ResponseValidationError

from chatbot_rag import config
from chatbot_rag.errors import ExternalServiceError
from chatbot_rag.llm_client import CompletionClient
from chatbot_rag.rag.index import SearchResult
from chatbot_rag.rag.retriever import RetrievedContext, Retriever

logger = structlog.get_logger()

FALLBACK_MESSAGE = "I apologize, but I could not generate a response."
SOURCE_PREVIEW_CHARS = 200
MAX_FOLLOW_UP_QUESTIONS = 3

# Only chunks that belong to a stored document are eligible as context
DOCUMENT_CHUNK_FILTER = {"document_id": {"$exists": True}}

SYSTEM_PROMPT_TEMPLATE = """You are a helpful AI assistant with access to a knowledge base. Use the following context to provide accurate and helpful responses to user questions.

If the user's question can be answered using the provided context, use that information. If not, acknowledge that you don't have the specific information and offer to help with what you can.

Context from knowledge base:
{context}

Instructions:
1. Answer questions based on the provided context when possible
2. Be helpful and informative
3. If you don't have specific information, say so clearly
4. Keep responses concise but thorough
5. Always be polite and professional

Remember: You have access to the knowledge base context above. Use it to provide accurate information."""

FOLLOW_UP_SYSTEM_PROMPT = "You are a helpful assistant that generates relevant follow-up questions."

FOLLOW_UP_PROMPT_TEMPLATE = """Based on the user's message: "{message}", suggest 3 relevant follow-up questions that would help clarify or expand on their request. Make the questions specific and actionable.

Format your response as a simple list, one question per line."""

INTENT_SYSTEM_PROMPT = "You are an AI that analyzes user intent. Respond only with valid JSON."

INTENT_PROMPT_TEMPLATE = """Analyze the user's message and categorize it. Respond with a JSON object containing:
- intent: The main purpose of the message (e.g., "information_request", "problem_solving", "general_chat")
- confidence: A number between 0 and 1 indicating confidence in the classification
- category: A broad category (e.g., "support", "sales", "technical", "general")

User message: "{message}\""""


@dataclass
class ChatContext:
    tenant_id: str
    knowledge_base_id: str
    max_context_length: int = config.MAX_CONTEXT_LENGTH
    temperature: float = config.CHAT_TEMPERATURE
    max_tokens: int = config.CHAT_MAX_TOKENS
    top_k: int = config.RETRIEVAL_TOP_K


@dataclass
class ChatSource:
    document_id: str
    title: str
    content: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentId": self.document_id,
            "title": self.title,
            "content": self.content,
            "score": self.score,
        }


@dataclass
class ChatResponse:
    message: str
    sources: List[ChatSource] = field(default_factory=list)
    tokens_used: int = 0
    cost: float = 0.0
    used_context: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "context": {
                "sources": [source.to_dict() for source in self.sources],
                "tokensUsed": self.tokens_used,
                "cost": self.cost,
            },
        }


class UserIntent(BaseModel):
    """Classification of a user message returned by the chat model."""

    intent: str = "general_chat"
    confidence: float = Field(default=0.5, ge=0, le=1)
    category: str = "general"


def create_system_prompt(context: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(context=context)


def extract_sources(results: List[SearchResult]) -> List[ChatSource]:
    """Build display sources with a short content preview."""
    return [
        ChatSource(
            document_id=result.metadata.document_id,
            title=result.metadata.source_document,
            content=result.content[:SOURCE_PREVIEW_CHARS]
            + ("..." if len(result.content) > SOURCE_PREVIEW_CHARS else ""),
            score=result.score,
        )
        for result in results
    ]


class ChatService:
    """Answers user messages grounded in a tenant's knowledge base."""

    def __init__(
        self,
        retriever: Retriever,
        completion_client: CompletionClient,
        model: str = None,
        cost_per_1k_tokens: float = None,
        degrade_on_retrieval_error: bool = None,
    ):
        """Initialize the chat service.

        Args:
            retriever: Retriever for knowledge base context
            completion_client: Chat completion client
            model: Chat model name (default from config)
            cost_per_1k_tokens: Price used for cost accounting (default from config)
            degrade_on_retrieval_error: Answer without context when retrieval
                fails instead of raising (default from config)
        """
        self.retriever = retriever
        self.completion_client = completion_client
        self.model = model or config.CHAT_MODEL
        self.cost_per_1k_tokens = (
            config.CHAT_COST_PER_1K if cost_per_1k_tokens is None else cost_per_1k_tokens
        )
        self.degrade_on_retrieval_error = (
            config.RETRIEVAL_DEGRADE_ON_ERROR
            if degrade_on_retrieval_error is None
            else degrade_on_retrieval_error
        )

    def calculate_cost(self, tokens: int) -> float:
        return (tokens / 1000) * self.cost_per_1k_tokens

    async def _retrieve(self, message: str, context: ChatContext) -> RetrievedContext:
        try:
            return await self.retriever.retrieve_context(
                message,
                knowledge_base_id=context.knowledge_base_id,
                tenant_id=context.tenant_id,
                top_k=context.top_k,
                filter=DOCUMENT_CHUNK_FILTER,
                max_context_length=context.max_context_length,
            )
        except ExternalServiceError as e:
            if not self.degrade_on_retrieval_error:
                raise
            # Log RAG error but continue with chat (graceful degradation)
            logger.warning(
                "rag_retrieval_failed",
                knowledge_base_id=context.knowledge_base_id,
                error=str(e),
                service=e.service,
            )
            return RetrievedContext(context="", results=[])

    async def chat(self, message: str, context: ChatContext) -> ChatResponse:
        """Generate an answer to a user message.

        Args:
            message: User message text
            context: Tenant, knowledge base and generation settings

        Returns:
            ChatResponse with the answer, sources, token usage and cost

        Raises:
            ExternalServiceError: If the completion call fails, or retrieval
                fails and degradation is disabled
        """
        logger.info(
            "chat_request_received",
            knowledge_base_id=context.knowledge_base_id,
            message_length=len(message),
        )

        retrieved = await self._retrieve(message, context)

        messages = [
            {"role": "system", "content": create_system_prompt(retrieved.context)},
            {"role": "user", "content": message},
        ]

        completion = await self.completion_client.complete(
            messages,
            self.model,
            temperature=context.temperature,
            max_tokens=context.max_tokens,
        )

        answer = completion.content or FALLBACK_MESSAGE
        if not completion.content:
            logger.warning("empty_completion_response", model=self.model)

        response = ChatResponse(
            message=answer,
            sources=extract_sources(retrieved.results),
            tokens_used=completion.total_tokens,
            cost=self.calculate_cost(completion.total_tokens),
            used_context=bool(retrieved.context),
        )

        logger.info(
            "chat_response_sent",
            knowledge_base_id=context.knowledge_base_id,
            response_length=len(answer),
            num_sources=len(response.sources),
            tokens_used=response.tokens_used,
            used_context=response.used_context,
        )

        return response

    async def generate_follow_up_questions(self, message: str) -> List[str]:
        """Suggest up to three follow-up questions for a user message.

        Returns an empty list when the completion call fails.
        """
        messages = [
            {"role": "system", "content": FOLLOW_UP_SYSTEM_PROMPT},
            {"role": "user", "content": FOLLOW_UP_PROMPT_TEMPLATE.format(message=message)},
        ]
        try:
            completion = await self.completion_client.complete(
                messages, self.model, temperature=0.7, max_tokens=150
            )
        except ExternalServiceError as e:
            logger.warning("follow_up_generation_failed", error=str(e), service=e.service)
            return []

        lines = [line.strip() for line in (completion.content or "").splitlines()]
        return [line for line in lines if line][:MAX_FOLLOW_UP_QUESTIONS]

    async def analyze_user_intent(self, message: str) -> UserIntent:
        """Classify a user message, falling back to general chat."""
        messages = [
            {"role": "system", "content": INTENT_SYSTEM_PROMPT},
            {"role": "user", "content": INTENT_PROMPT_TEMPLATE.format(message=message)},
        ]
        try:
            completion = await self.completion_client.complete(
                messages, self.model, temperature=0.3, max_tokens=100
            )
            return UserIntent.model_validate_json(completion.content or "{}")
        except ExternalServiceError as e:
            logger.warning("intent_analysis_failed", error=str(e), service=e.service)
        except ResponseValidationError as e:
            logger.warning("intent_response_invalid", error=str(e))
        return UserIntent()
