"""Prompt and tool-definition templates for the language model.

The model is never given the full capability catalog up front.  It gets
a short system prompt plus a handful of discovery tools and is expected
to look capabilities up on demand from inside its code.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Iterable

from harness.models import CapabilityDescriptor

logger = logging.getLogger(__name__)

PROVIDER_FORMATS = ("openai", "anthropic", "generic")

_SYSTEM_PROMPT = """\
You are an agent that solves tasks by writing and running Python code.

## 1. Capability discovery

You are not given a list of capabilities. Discover them from your code:

- `await list_capabilities()` returns the names of all capabilities.
- `await describe_capability(name)` returns a capability's description
  and JSON input schema.

Capability names look like `category__operation` (for example
`text__word_count`).{categories}

## 2. Code execution

Your code runs as the body of an async function, so top-level `await`
and `return` both work. The value you `return` is the result of the run;
anything you `print` is collected as logs.

- `await invoke_capability(name, input)` calls a capability with a dict
  input and returns its result. Failures raise `CapabilityError`.
- Only the Python standard library is importable.

## 3. Storage

- `SKILLS_DIR` is persistent across your sessions. Save reusable helpers
  there.
- `WORKSPACE_DIR` is scratch space for this task only; it is deleted when
  the task ends.

Writes anywhere else are refused, and there is no network access.

## 4. Privacy

Sensitive values (emails, phone numbers, card numbers, ...) reach you as
tokens such as `[EMAIL_1]`. Pass tokens through unchanged; they are
resolved to the real values when a capability runs.
"""


def build_system_prompt(descriptors: Iterable[CapabilityDescriptor] = ()) -> str:
    """Render the system prompt, naming the capability categories if any."""
    categories = sorted({d.category for d in descriptors})
    suffix = ""
    if categories:
        suffix = " Categories available: " + ", ".join(f"`{c}`" for c in categories) + "."
    return _SYSTEM_PROMPT.format(categories=suffix)


def discovery_tool_definitions() -> list[dict[str, Any]]:
    """The tools offered to the model, in the generic (name/description/parameters) shape."""
    return [
        {
            "name": "list_capabilities",
            "description": "List the names of all available capabilities.",
            "parameters": {"type": "object", "properties": {}, "required": []},
        },
        {
            "name": "describe_capability",
            "description": "Get the description and input schema of one capability.",
            "parameters": {
                "type": "object",
                "properties": {
                    "toolName": {
                        "type": "string",
                        "description": "Name of the capability to describe",
                    }
                },
                "required": ["toolName"],
            },
        },
        {
            "name": "invoke_capability",
            "description": "Run one capability with the given input and return its result.",
            "parameters": {
                "type": "object",
                "properties": {
                    "toolName": {"type": "string", "description": "Capability to run"},
                    "input": {"type": "object", "description": "Capability input"},
                },
                "required": ["toolName", "input"],
            },
        },
        {
            "name": "execute_code",
            "description": (
                "Run Python code in an isolated sandbox. Inside the code, "
                "list_capabilities(), describe_capability() and invoke_capability() "
                "are available as async functions."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "code": {"type": "string", "description": "Python source to execute"}
                },
                "required": ["code"],
            },
        },
    ]


def format_tools(tools: list[dict[str, Any]], provider: str = "generic") -> list[dict[str, Any]]:
    """Convert generic tool definitions to a provider's function-calling shape.

    Unknown providers fall back to the generic shape with a warning.
    """
    if provider == "openai":
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t["description"],
                    "parameters": copy.deepcopy(t["parameters"]),
                },
            }
            for t in tools
        ]
    if provider == "anthropic":
        return [
            {
                "name": t["name"],
                "description": t["description"],
                "input_schema": copy.deepcopy(t["parameters"]),
            }
            for t in tools
        ]
    if provider != "generic":
        logger.warning("Unknown tool format %r, using generic definitions", provider)
    return copy.deepcopy(tools)
