"""Quart application exposing document upload, search and chat."""
import logging
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as RequestValidationError
from quart import Quart, current_app, jsonify, request

from chatbot_rag import config
from chatbot_rag.errors import (
    DocumentProcessingError,
    ExternalServiceError,
    PipelineError,
    ValidationError,
)
from chatbot_rag.rag.chat import ChatContext
from chatbot_rag.rag.ingest import UploadedFile
from chatbot_rag.services import RAGServices, get_services

TENANT_HEADER = "X-Tenant-ID"
MAX_MESSAGE_LENGTH = 2000


def configure_logging() -> None:
    """Configure structured JSON logging."""
    logging.basicConfig(format="%(message)s", level=config.LOG_LEVEL.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


configure_logging()

logger = structlog.get_logger()


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    query: str = Field(min_length=1)
    top_k: Optional[int] = Field(default=None, alias="topK", ge=1)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    message: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)
    knowledge_base_id: str = Field(alias="knowledgeBaseId", min_length=1)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens", ge=1)
    max_context_length: Optional[int] = Field(default=None, alias="maxContextLength", ge=1)


def _services() -> RAGServices:
    services = current_app.extensions.get("rag_services")
    if services is None:
        services = get_services()
        current_app.extensions["rag_services"] = services
    return services


def _tenant_id() -> str:
    tenant_id = (request.headers.get(TENANT_HEADER) or "").strip()
    if not tenant_id:
        raise ValidationError(f"Missing {TENANT_HEADER} header")
    return tenant_id


def _optional_int(form, name: str) -> Optional[int]:
    value = form.get(name)
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {value!r}") from None


def create_app(services: Optional[RAGServices] = None) -> Quart:
    """Create the Quart app.

    Args:
        services: Pipeline components to serve. Built from config on first
            request when not provided.
    """
    app = Quart(__name__)
    if services is not None:
        app.extensions["rag_services"] = services

    @app.route("/api/knowledge-bases/<kb_id>/documents", methods=["POST"])
    async def upload_documents(kb_id: str):
        """Upload and index one or more documents.

        Expects multipart form data with one or more "files" parts and
        optional "chunkSize" and "overlap" fields. Responds 200 with per-file
        results and errors even when some files fail.
        """
        tenant_id = _tenant_id()
        form = await request.form
        files = await request.files

        uploads = []
        for storage in files.getlist("files"):
            uploads.append(
                UploadedFile(
                    filename=storage.filename or "upload",
                    data=storage.read(),
                    content_type=storage.mimetype or None,
                )
            )

        report = await _services().ingest.upload_documents(
            uploads,
            knowledge_base_id=kb_id,
            tenant_id=tenant_id,
            chunk_size=_optional_int(form, "chunkSize"),
            overlap=_optional_int(form, "overlap"),
        )

        return jsonify(report.to_dict()), 200

    @app.route("/api/knowledge-bases/<kb_id>/documents/<document_id>", methods=["DELETE"])
    async def delete_document(kb_id: str, document_id: str):
        tenant_id = _tenant_id()
        deleted = await _services().ingest.delete_document(
            document_id, tenant_id=tenant_id, knowledge_base_id=kb_id
        )

        logger.info(
            "document_delete_requested",
            knowledge_base_id=kb_id,
            document_id=document_id,
            deleted=deleted,
        )

        return jsonify({"success": True, "deleted": deleted})

    @app.route("/api/knowledge-bases/<kb_id>", methods=["DELETE"])
    async def delete_knowledge_base(kb_id: str):
        tenant_id = _tenant_id()
        deleted = await _services().ingest.delete_knowledge_base(kb_id, tenant_id=tenant_id)
        return jsonify({"success": True, "deleted": deleted})

    @app.route("/api/knowledge-bases/<kb_id>/search", methods=["POST"])
    async def search(kb_id: str):
        """Semantic search within one knowledge base.

        Expects JSON body: {"query": "...", "topK": 5}
        """
        tenant_id = _tenant_id()
        body = SearchRequest.model_validate(await request.get_json(silent=True) or {})

        results = await _services().retriever.retrieve(
            body.query,
            knowledge_base_id=kb_id,
            tenant_id=tenant_id,
            top_k=body.top_k,
        )

        return jsonify({
            "results": [
                {
                    "id": result.id,
                    "score": result.score,
                    "content": result.content,
                    "documentId": result.metadata.document_id,
                    "sourceDocument": result.source,
                    "chunkIndex": result.metadata.chunk_index,
                }
                for result in results
            ]
        })

    @app.route("/api/chat", methods=["POST"])
    async def chat():
        """Answer a message from a knowledge base.

        Expects JSON body:
        {
            "message": "user message text",
            "knowledgeBaseId": "kb-id",
            "temperature": 0.7,        // optional
            "maxTokens": 500,          // optional
            "maxContextLength": 4000   // optional
        }

        Returns JSON:
        {
            "message": "assistant response text",
            "context": {"sources": [...], "tokensUsed": 123, "cost": 0.0002}
        }
        """
        tenant_id = _tenant_id()
        body = ChatRequest.model_validate(await request.get_json(silent=True) or {})

        context = ChatContext(tenant_id=tenant_id, knowledge_base_id=body.knowledge_base_id)
        if body.temperature is not None:
            context.temperature = body.temperature
        if body.max_tokens is not None:
            context.max_tokens = body.max_tokens
        if body.max_context_length is not None:
            context.max_context_length = body.max_context_length

        response = await _services().chat.chat(body.message, context)
        return jsonify(response.to_dict())

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - check that the vector index is reachable."""
        try:
            stats = await _services().index.get_index_stats()
            return jsonify({"status": "healthy", "index": stats}), 200
        except PipelineError as e:
            logger.error("health_check_failed", error=str(e))
            return jsonify({"status": "unhealthy", "error": str(e)}), 503

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(RequestValidationError)
    async def invalid_request(error):
        return jsonify({
            "error": "Invalid request",
            "details": error.errors(include_url=False, include_context=False),
        }), 400

    @app.errorhandler(ValidationError)
    async def validation_error(error):
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(DocumentProcessingError)
    async def document_error(error):
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(ExternalServiceError)
    async def external_service_error(error):
        logger.error(
            "external_service_failed",
            service=error.service,
            status_code=error.status_code,
            error=str(error),
        )
        return jsonify({"error": str(error), "service": error.service}), 502

    @app.errorhandler(404)
    async def not_found(error):
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    async def internal_error(error):
        """Handle 500 errors."""
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500

    return app


app = create_app()


if __name__ == "__main__":
    # For development - use hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
