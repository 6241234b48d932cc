"""
Schemas for vendor payloads.

SDK responses are dumped to plain dicts and validated here before anything
is read from them. Optional fields default; unknown fields are ignored; a
content block of an unknown type fails validation.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class VendorPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")


# Anthropic messages API

class AnthropicTextBlock(VendorPayload):
    type: Literal["text"]
    text: str = ""


class AnthropicToolUseBlock(VendorPayload):
    type: Literal["tool_use"]
    id: str = ""
    name: str = ""


class AnthropicThinkingBlock(VendorPayload):
    type: Literal["thinking"]
    thinking: str = ""


AnthropicContentBlock = Annotated[
    Union[AnthropicTextBlock, AnthropicToolUseBlock, AnthropicThinkingBlock],
    Field(discriminator="type"),
]


class AnthropicUsage(VendorPayload):
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class AnthropicMessage(VendorPayload):
    id: str = ""
    model: str = ""
    content: List[AnthropicContentBlock] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: Optional[AnthropicUsage] = None


class AnthropicTextDelta(VendorPayload):
    type: Literal["text_delta"]
    text: str = ""


class AnthropicInputJsonDelta(VendorPayload):
    type: Literal["input_json_delta"]
    partial_json: str = ""


class AnthropicThinkingDelta(VendorPayload):
    type: Literal["thinking_delta"]
    thinking: str = ""


AnthropicDelta = Annotated[
    Union[AnthropicTextDelta, AnthropicInputJsonDelta, AnthropicThinkingDelta],
    Field(discriminator="type"),
]


class AnthropicMessageStart(VendorPayload):
    type: Literal["message_start"]
    message: AnthropicMessage


class AnthropicContentBlockDelta(VendorPayload):
    type: Literal["content_block_delta"]
    index: int = 0
    delta: AnthropicDelta


class AnthropicMessageDeltaBody(VendorPayload):
    stop_reason: Optional[str] = None


class AnthropicMessageDelta(VendorPayload):
    type: Literal["message_delta"]
    delta: AnthropicMessageDeltaBody = Field(default_factory=AnthropicMessageDeltaBody)
    usage: Optional[AnthropicUsage] = None


# Stream events that carry text or usage; the rest (ping, block start/stop,
# message_stop) are skipped by type before validation
ANTHROPIC_STREAM_EVENTS = {
    "message_start": AnthropicMessageStart,
    "content_block_delta": AnthropicContentBlockDelta,
    "message_delta": AnthropicMessageDelta,
}


# OpenAI chat completions API

class OpenAIUsage(VendorPayload):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: Optional[int] = None


class OpenAIMessage(VendorPayload):
    role: str = "assistant"
    content: Optional[str] = None
    refusal: Optional[str] = None


class OpenAIChoice(VendorPayload):
    index: int = 0
    message: OpenAIMessage = Field(default_factory=OpenAIMessage)
    finish_reason: Optional[str] = None


class OpenAIChatCompletion(VendorPayload):
    id: str = ""
    model: str = ""
    choices: List[OpenAIChoice] = Field(default_factory=list)
    usage: Optional[OpenAIUsage] = None


class OpenAIDelta(VendorPayload):
    content: Optional[str] = None


class OpenAIChunkChoice(VendorPayload):
    index: int = 0
    delta: OpenAIDelta = Field(default_factory=OpenAIDelta)
    finish_reason: Optional[str] = None


class OpenAIChatCompletionChunk(VendorPayload):
    id: str = ""
    model: str = ""
    choices: List[OpenAIChunkChoice] = Field(default_factory=list)
    usage: Optional[OpenAIUsage] = None


class OpenAIEmbeddingItem(VendorPayload):
    index: int = 0
    embedding: List[float]


class OpenAIEmbeddingUsage(VendorPayload):
    prompt_tokens: int = 0
    total_tokens: int = 0


class OpenAIEmbeddingResponse(VendorPayload):
    model: str = ""
    data: List[OpenAIEmbeddingItem] = Field(default_factory=list)
    usage: Optional[OpenAIEmbeddingUsage] = None
