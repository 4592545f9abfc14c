"""Provider-agnostic conversation records."""

from dataclasses import dataclass, field

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"

ROLES = (SYSTEM, USER, ASSISTANT, TOOL)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON, exactly as the model produced it


@dataclass
class Message:
    role: str
    content: str
    tool_name: str | None = None
    tool_arguments: str | None = None
    # In-turn only; never written to a transcript.
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    @classmethod
    def tool_result(cls, call: ToolCall, output: str) -> "Message":
        return cls(
            TOOL,
            output,
            tool_name=call.name,
            tool_arguments=call.arguments,
            tool_call_id=call.id,
        )


def total_chars(messages: list[Message]) -> int:
    return sum(len(m.content) for m in messages)
