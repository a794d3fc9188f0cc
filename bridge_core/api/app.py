"""HTTP 入口：OpenAI 兼容的 /v1/chat/completions 以及健康检查等辅助接口。"""

from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from bridge_core.api.openai_format import completion_envelope, error_envelope, stream_events
from bridge_core.api.service import ChatService
from bridge_core.config.settings import settings
from bridge_core.domain.exceptions import BusinessError, ValidationError
from bridge_core.domain.models import ChatTurn, OperationRequest, TargetSpec
from bridge_core.infrastructure.storage.json_store import JsonConversationStore


ENDPOINTS = {
    "chat": "/v1/chat/completions (POST)",
    "health": "/health (GET)",
    "conversations": "/v1/conversations (GET)",
}


class ChatMessageIn(BaseModel):
    role: str = Field(..., description="'user' / 'assistant' / 'system'")
    content: Union[str, List[Dict[str, Any]], None] = None

    def text(self) -> str:
        # OpenAI 允许 content 为分段列表，只取其中的文本段
        if isinstance(self.content, list):
            return "".join(part.get("text") or "" for part in self.content if part.get("type") == "text")
        return self.content or ""


class TargetIn(BaseModel):
    id: Optional[str] = None
    time: Optional[Union[int, float, str]] = None
    index: Optional[int] = None


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str = Field(default="", description="角色 id")
    messages: List[ChatMessageIn] = Field(default_factory=list)
    stream: bool = False
    user: Optional[str] = None
    operation: str = Field(default="send", description="send / edit / delete / regenerate")
    target: Optional[TargetIn] = None
    new_content: Optional[str] = None

    def to_operation(self) -> OperationRequest:
        return OperationRequest(
            character_id=self.model,
            operation=self.operation,
            messages=[ChatTurn(role=m.role, content=m.text()) for m in self.messages],
            target=TargetSpec.from_dict(self.target.model_dump()) if self.target else None,
            new_content=self.new_content,
            user=self.user,
        )


def get_service(request: Request) -> ChatService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        service = ChatService(JsonConversationStore(root=settings.storage_root))
        request.app.state.service = service
    return service


def create_app(service: Optional[ChatService] = None) -> FastAPI:
    app = FastAPI(title=settings.service_name, version=settings.service_version)
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError) -> JSONResponse:
        status, body = error_envelope(exc)
        return JSONResponse(status_code=status, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        status, body = error_envelope(ValidationError(code="INVALID_REQUEST", message=str(exc.errors())))
        return JSONResponse(status_code=status, content=body)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={"error": "Not found", "available_endpoints": [v.split(" ")[0] for v in ENDPOINTS.values()]},
            )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.post("/v1/chat/completions")
    def chat_completions(
        body: ChatCompletionRequest,
        request: Request,
        authorization: Optional[str] = Header(default=None),
    ):
        service = get_service(request)
        result = service.handle(body.to_operation(), authorization)
        if result.message is None:
            return {"object": "conversation", "conversation": result.conversation.to_record()}
        model_name = result.conversation.display_name
        if body.stream:
            return StreamingResponse(
                stream_events(result.message.content, model_name),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            )
        return completion_envelope(result.message.content, model_name)

    @app.get("/health")
    @app.get("/api/health")
    def health(request: Request, authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
        return get_service(request).health(authorization)

    @app.get("/")
    def root() -> Dict[str, Any]:
        return {
            "service": settings.service_name,
            "version": settings.service_version,
            "status": "running",
            "endpoints": ENDPOINTS,
        }

    @app.get("/v1/conversations")
    def list_conversations(request: Request) -> Dict[str, Any]:
        keys = get_service(request).list_conversations()
        return {"object": "list", "data": keys}

    @app.get("/v1/conversations/{key}")
    def get_conversation(key: str, request: Request):
        conv = get_service(request).get_conversation(key)
        if conv is None:
            return JSONResponse(
                status_code=404,
                content={"error": {"message": f"conversation {key} not found", "type": "invalid_request_error", "code": "not_found"}},
            )
        return {"object": "conversation", "conversation": conv.to_record()}

    return app


app = create_app()
