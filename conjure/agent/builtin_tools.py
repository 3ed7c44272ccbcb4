"""Built-in tools for the Conjure agent: think and artifact authoring.

Page tools (DOM inspection, deployment, user-input forms) live with the
client that owns the browser tab and are registered separately. The tools
here only need the artifact store. All of them return JSON-encodable dicts
with a ``success`` flag; a failed lookup returns ``success: False`` rather
than raising, so the model sees a normal result it can act on.
"""

from __future__ import annotations

import logging
from typing import Any

from conjure.agent.state import ArtifactType
from conjure.agent.tools import ToolDispatcher, current_thread_id
from conjure.storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def think_tool(
    goal: str,
    steps: list[dict[str, Any]] | None = None,
    artifact_type: str = "none",
    page_interaction: bool = False,
    dom_needed: bool = False,
    visible_ui: bool = False,
    needs_worker: bool = False,
    existing_artifacts: str | None = None,
    risks: str | None = None,
) -> dict[str, Any]:
    """Record the agent's approach. Pure: echoes the structured plan back."""
    return {
        "success": True,
        "goal": goal,
        "page_interaction": page_interaction,
        "dom_needed": dom_needed,
        "visible_ui": visible_ui,
        "needs_worker": needs_worker,
        "artifact_type": artifact_type,
        "steps": steps or [],
        "existing_artifacts": existing_artifacts,
        "risks": risks,
    }


async def generate_artifact_tool(
    store: ArtifactStore,
    type: ArtifactType,
    name: str,
    code: str,
    description: str = "",
    element_xpath: str | None = None,
) -> dict[str, Any]:
    """Create an artifact in the thread of the running call."""
    artifact = await store.create_artifact(
        thread_id=current_thread_id(),
        type=type,
        name=name,
        code=code,
        element_xpath=element_xpath,
    )
    message = f'{type} artifact "{name}" created successfully.'
    if description:
        message += f" Description: {description}"
    return {"success": True, "artifact_id": artifact.id, "message": message}


async def edit_artifact_tool(
    store: ArtifactStore,
    artifact_id: str,
    new_code: str,
    instruction: str = "",
) -> dict[str, Any]:
    """Replace an artifact's code, keeping the previous code as a version."""
    artifact = await store.get_artifact(artifact_id)
    if artifact is None:
        return {"success": False, "error": f'Artifact "{artifact_id}" not found'}

    await store.update_artifact(artifact_id, code=new_code)
    logger.info("Edited artifact %s (%s)", artifact_id, artifact.name)
    return {
        "success": True,
        "artifact_id": artifact_id,
        "message": f'Artifact "{artifact.name}" updated. Instruction: {instruction}',
    }


async def remove_artifact_tool(store: ArtifactStore, artifact_id: str) -> dict[str, Any]:
    """Delete an artifact from the thread."""
    artifact = await store.get_artifact(artifact_id)
    if artifact is None or not await store.delete_artifact(artifact_id):
        return {"success": False, "error": f'Artifact "{artifact_id}" not found'}

    logger.info("Removed artifact %s (%s)", artifact_id, artifact.name)
    return {"success": True, "artifact_id": artifact_id, "message": f'Artifact "{artifact.name}" removed.'}


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_THINK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "MANDATORY: call this tool FIRST on every request. Use it to think through "
        "your approach, plan your steps and decide on the best course of action."
    ),
    "properties": {
        "goal": {"type": "string", "description": "What the user is asking for (one sentence)"},
        "page_interaction": {"type": "boolean", "description": "Does this involve existing page elements?"},
        "dom_needed": {"type": "boolean", "description": "Must the DOM be inspected before generating code?"},
        "visible_ui": {"type": "boolean", "description": "Does this create or modify visible UI?"},
        "needs_worker": {
            "type": "boolean",
            "description": "Does this need external HTTP calls, polling or data processing?",
        },
        "artifact_type": {
            "type": "string",
            "enum": ["react-component", "js-script", "css", "background-worker", "edit", "none"],
            "description": "Which artifact type fits this request",
        },
        "steps": {
            "type": "array",
            "description": "Ordered tool calls with reasoning for each",
            "items": {
                "type": "object",
                "properties": {
                    "tool": {"type": "string"},
                    "reasoning": {"type": "string"},
                },
                "required": ["tool", "reasoning"],
            },
        },
        "existing_artifacts": {"type": "string", "description": "Relevant existing artifacts, if any"},
        "risks": {"type": "string", "description": "What could go wrong"},
    },
    "required": ["goal", "artifact_type", "steps"],
}


def _generate_schema(kind: str, code_description: str) -> dict[str, Any]:
    return {
        "type": "object",
        "description": f"Generate a new {kind} artifact for the current extension",
        "properties": {
            "name": {"type": "string", "description": "Short artifact name"},
            "description": {"type": "string", "description": "What the artifact does"},
            "code": {"type": "string", "description": code_description},
            "element_xpath": {
                "type": "string",
                "description": "XPath of the element the artifact attaches to, if any",
            },
        },
        "required": ["name", "code"],
    }


_EDIT_ARTIFACT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Modify an existing artifact by providing updated code",
    "properties": {
        "artifact_id": {"type": "string", "description": "The ID of the artifact to edit"},
        "new_code": {"type": "string", "description": "The complete updated code"},
        "instruction": {"type": "string", "description": "What was changed and why"},
    },
    "required": ["artifact_id", "new_code"],
}

_REMOVE_ARTIFACT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Remove an artifact that is no longer wanted",
    "properties": {
        "artifact_id": {"type": "string", "description": "The ID of the artifact to remove"},
    },
    "required": ["artifact_id"],
}

_GENERATORS: dict[str, tuple[ArtifactType, str]] = {
    "generate_react_component": ("react-component", "React component source (default export)"),
    "generate_js": ("js-script", "JavaScript executed in the page"),
    "generate_css": ("css", "CSS rules injected as a <style> tag"),
    "generate_background_worker": ("background-worker", "Worker source for API calls and polling"),
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(dispatcher: ToolDispatcher, store: ArtifactStore) -> None:
    """Register think, the generate_* family, edit_artifact and remove_artifact.

    Creates closure wrappers that inject the artifact store.
    """
    dispatcher.register("think", think_tool, _THINK_SCHEMA)

    for tool_name, (artifact_type, code_description) in _GENERATORS.items():

        async def _generate(
            name: str,
            code: str,
            description: str = "",
            element_xpath: str | None = None,
            _type: ArtifactType = artifact_type,
        ) -> dict[str, Any]:
            return await generate_artifact_tool(store, _type, name, code, description, element_xpath)

        dispatcher.register(tool_name, _generate, _generate_schema(artifact_type, code_description))

    async def _edit(artifact_id: str, new_code: str, instruction: str = "") -> dict[str, Any]:
        return await edit_artifact_tool(store, artifact_id, new_code, instruction)

    dispatcher.register("edit_artifact", _edit, _EDIT_ARTIFACT_SCHEMA)

    async def _remove(artifact_id: str) -> dict[str, Any]:
        return await remove_artifact_tool(store, artifact_id)

    dispatcher.register("remove_artifact", _remove, _REMOVE_ARTIFACT_SCHEMA)
