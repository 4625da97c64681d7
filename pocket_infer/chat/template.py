"""
Chat template rendering.

Chat-tuned models are trained on text with model-specific role markers.
The tokenizer of such a model ships its conversation format as a Jinja2
template; this module renders a conversation through that template (or an
explicit override) in a sandboxed environment and extracts the metadata a
completion needs: extra stop sequences, an optional grammar, the detected
chat format and whether the prompt leaves a reasoning block open.

Templates can declare metadata in Jinja comments, which render to nothing:

    {# @stop: <|im_end|> #}
    {# @stop: "\\n\\nUser:" #}
    {# @grammar: root ::= "yes" | "no" #}
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import jinja2
from jinja2.sandbox import ImmutableSandboxedEnvironment

from pocket_infer.errors import TemplateError


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ChatFormat(str, Enum):
    """Conversation layout detected from a template's role markers."""

    CHATML = "chatml"
    LLAMA3 = "llama3"
    GEMMA = "gemma"
    MISTRAL = "mistral"
    GPT_OSS = "gpt-oss"
    CONTENT_ONLY = "content-only"


# Checked in order; the first marker found in the template wins.
_FORMAT_MARKERS: Tuple[Tuple[str, ChatFormat], ...] = (
    ("<|channel|>", ChatFormat.GPT_OSS),
    ("<|im_start|>", ChatFormat.CHATML),
    ("<|start_header_id|>", ChatFormat.LLAMA3),
    ("<start_of_turn>", ChatFormat.GEMMA),
    ("[INST]", ChatFormat.MISTRAL),
)

_DIRECTIVE_RE = re.compile(r"\{#-?\s*@(stop|grammar):\s*(.*?)\s*-?#\}", re.DOTALL)

THINK_OPEN_TAG = "<think>"


@dataclass
class ChatMessage:
    """One turn of a conversation."""

    role: Role
    content: str
    name: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.name is not None:
            message["name"] = self.name
        if self.tool_calls is not None:
            message["tool_calls"] = self.tool_calls
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        return message


@dataclass(frozen=True)
class RenderedPrompt:
    """Result of rendering a conversation with the full form.

    Attributes:
        prompt: Text to feed the model.
        additional_stops: Stop sequences declared by the template.
        chat_format: Detected conversation layout.
        grammar: Grammar declared by the template, if any.
        thinking_forced_open: The prompt ends inside an open reasoning block.
    """

    prompt: str
    additional_stops: Tuple[str, ...] = ()
    chat_format: ChatFormat = ChatFormat.CONTENT_ONLY
    grammar: Optional[str] = None
    thinking_forced_open: bool = False


@dataclass(frozen=True)
class TemplateDefaults:
    """Model-provided values used when rendering."""

    chat_template: Optional[str] = None
    bos_token: Optional[str] = None
    eos_token: Optional[str] = None


MessagesInput = Union[str, Sequence[Union[Mapping[str, Any], ChatMessage]]]


def parse_messages(messages: MessagesInput) -> List[ChatMessage]:
    """Decode a conversation from JSON text or a list of mappings.

    Raises:
        TemplateError: On malformed JSON or an invalid message.
    """
    if isinstance(messages, str):
        try:
            messages = json.loads(messages)
        except json.JSONDecodeError as e:
            raise TemplateError(f"Messages are not valid JSON: {e}") from e

    if not isinstance(messages, (list, tuple)):
        raise TemplateError(
            f"Messages must be an array, got {type(messages).__name__}"
        )

    parsed: List[ChatMessage] = []
    for index, message in enumerate(messages):
        if isinstance(message, ChatMessage):
            parsed.append(message)
            continue
        if not isinstance(message, Mapping):
            raise TemplateError(f"Message {index} is not an object")
        if "role" not in message:
            raise TemplateError(f"Message {index} has no role")
        try:
            role = Role(message["role"])
        except ValueError as e:
            raise TemplateError(
                f"Message {index} has unsupported role {message['role']!r}"
            ) from e

        content = message.get("content")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise TemplateError(f"Message {index} content must be a string")

        parsed.append(
            ChatMessage(
                role=role,
                content=content,
                name=message.get("name"),
                tool_calls=message.get("tool_calls"),
                tool_call_id=message.get("tool_call_id"),
            )
        )
    return parsed


def _raise_exception(message: str) -> None:
    raise jinja2.exceptions.TemplateError(message)


def _strftime_now(fmt: str) -> str:
    return datetime.now().strftime(fmt)


def _tojson(value: Any, ensure_ascii: bool = False, indent: Optional[int] = None,
            separators: Optional[Tuple[str, str]] = None, sort_keys: bool = False) -> str:
    return json.dumps(
        value, ensure_ascii=ensure_ascii, indent=indent, separators=separators, sort_keys=sort_keys
    )


@lru_cache(maxsize=1)
def _environment() -> ImmutableSandboxedEnvironment:
    env = ImmutableSandboxedEnvironment(
        trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True
    )
    env.globals["raise_exception"] = _raise_exception
    env.globals["strftime_now"] = _strftime_now
    env.filters["tojson"] = _tojson
    return env


@lru_cache(maxsize=32)
def _compile(source: str) -> jinja2.Template:
    try:
        return _environment().from_string(source)
    except jinja2.TemplateError as e:
        raise TemplateError(f"Invalid chat template: {e}") from e


def _resolve_template(template: Optional[str], defaults: TemplateDefaults) -> str:
    if template:
        return template
    if defaults.chat_template:
        return defaults.chat_template
    raise TemplateError("No chat template given and the model has none")


def detect_chat_format(template: str) -> ChatFormat:
    for marker, chat_format in _FORMAT_MARKERS:
        if marker in template:
            return chat_format
    return ChatFormat.CONTENT_ONLY


def parse_directives(template: str) -> Tuple[Tuple[str, ...], Optional[str]]:
    """Return the ``@stop`` sequences and ``@grammar`` declared in a template."""
    stops: List[str] = []
    grammar = None
    for kind, text in _DIRECTIVE_RE.findall(template):
        if text.startswith('"'):
            try:
                text = json.loads(text)
            except json.JSONDecodeError as e:
                raise TemplateError(f"Invalid @{kind} directive {text!r}: {e}") from e
        if kind == "stop":
            if text and text not in stops:
                stops.append(text)
        else:
            grammar = text
    return tuple(stops), grammar


def _render(source: str, messages: List[ChatMessage], defaults: TemplateDefaults,
            tools: Optional[List[Dict[str, Any]]], extra: Dict[str, Any]) -> str:
    variables: Dict[str, Any] = {
        "messages": [m.to_dict() for m in messages],
        "add_generation_prompt": True,
        "bos_token": defaults.bos_token or "",
        "eos_token": defaults.eos_token or "",
    }
    if tools is not None:
        variables["tools"] = tools
    variables.update(extra)

    compiled = _compile(source)
    try:
        return compiled.render(**variables)
    except jinja2.TemplateError as e:
        raise TemplateError(f"Chat template failed to render: {e}") from e
    except (TypeError, ValueError, KeyError, IndexError, AttributeError) as e:
        raise TemplateError(f"Chat template failed to render: {e!r}") from e


def format_chat(
    messages: MessagesInput,
    template: Optional[str] = None,
    defaults: TemplateDefaults = TemplateDefaults(),
    tools: Optional[List[Dict[str, Any]]] = None,
) -> str:
    """Render a conversation into a prompt string.

    The template's own default decides whether reasoning is enabled.
    """
    source = _resolve_template(template, defaults)
    return _render(source, parse_messages(messages), defaults, tools, {})


def format_chat_full(
    messages: MessagesInput,
    template: Optional[str] = None,
    enable_thinking: bool = False,
    defaults: TemplateDefaults = TemplateDefaults(),
    tools: Optional[List[Dict[str, Any]]] = None,
) -> RenderedPrompt:
    """Render a conversation and return the prompt with its metadata.

    Args:
        messages: JSON array text or a list of messages.
        template: Explicit template; empty or None uses the model default.
        enable_thinking: Passed to the template as ``enable_thinking``.
        defaults: Model default template and special tokens.
        tools: Tool schemas made available to the template.

    Raises:
        TemplateError: If no template is available, the messages are
            invalid, or rendering fails.
    """
    source = _resolve_template(template, defaults)
    parsed = parse_messages(messages)
    additional_stops, grammar = parse_directives(source)
    prompt = _render(source, parsed, defaults, tools, {"enable_thinking": enable_thinking})

    return RenderedPrompt(
        prompt=prompt,
        additional_stops=additional_stops,
        chat_format=detect_chat_format(source),
        grammar=grammar,
        thinking_forced_open=enable_thinking and prompt.rstrip().endswith(THINK_OPEN_TAG),
    )
