"""System prompts for the planner and orchestrator nodes."""

from __future__ import annotations

from collections.abc import Sequence

from conjure.agent.state import Artifact, PageContext

AGENT_SYSTEM_PROMPT = """You are Conjure, an agent that creates and manages web page extensions. \
An extension groups artifacts (React components, JS scripts, CSS, background workers) \
under a single URL scope. You can generate, edit, deploy, inspect and remove artifacts, \
and ask the user for input through forms.

Be concise. State your plan in one or two sentences, then act. Do not repeat the user's request.

## Workflow
1. Call `think` first on every request and fill in every field.
2. Inspect the page before generating code that touches existing elements. \
Never guess selectors or XPaths.
3. Capture the page theme before generating any visible UI.
4. Prefer editing an existing artifact over creating a near-duplicate.
5. Put external API calls, polling and data processing in a background worker, \
never in a component.
6. Never ask for secrets in chat; request them through a user-input form.

When the work is complete, reply with a short summary of what changed and stop calling tools."""

PLANNER_SYSTEM_PROMPT = """You are the planning step of Conjure, an agent that builds web page extensions.

Read the conversation and decide what should happen next. Do not call tools and do not \
write code. Reply with a short plan:
- what the user ultimately wants
- what has already been done (look at tool results)
- the next one to three concrete actions, naming the tools to use
- anything that blocks progress

If the request is already satisfied, say so in one sentence."""


def _page_lines(context: PageContext | None) -> list[str]:
    if context is None:
        return []
    lines = []
    if context.url:
        lines.append(f"- URL: {context.url}")
    if context.title:
        lines.append(f"- Title: {context.title}")
    return lines


def planner_system_prompt(
    context: PageContext | None = None,
    plan: str | None = None,
) -> str:
    prompt = PLANNER_SYSTEM_PROMPT
    page = _page_lines(context)
    if page:
        prompt += "\n\nCurrent page context:\n" + "\n".join(line[2:] for line in page)
    if plan:
        prompt += f"\n\nPrevious plan:\n{plan}"
    return prompt


def artifacts_summary(artifacts: Sequence[Artifact]) -> str:
    if not artifacts:
        return "No artifacts exist yet in this extension."
    lines = [
        f'- [{a.type}] "{a.name}" (id: {a.id}, enabled: {str(a.enabled).lower()})'
        for a in artifacts
    ]
    return "Current artifacts in this extension:\n" + "\n".join(lines)


def agent_system_prompt(
    context: PageContext | None = None,
    plan: str | None = None,
    artifacts: Sequence[Artifact] = (),
) -> str:
    parts = [AGENT_SYSTEM_PROMPT]

    page = _page_lines(context)
    if page:
        parts.append("## Current Page Context\n" + "\n".join(page))

    if plan:
        parts.append(f"## Current Plan\n{plan}")

    parts.append(artifacts_summary(artifacts))
    return "\n\n".join(parts)
