"""
Agent Prompts
=============

Markdown prompts built from an issue's source data.

- build_analysis_prompt: read-only investigation ending in a proposal
- build_fix_prompt: implement an approved proposal in a worktree
- build_revision_prompt: reviewer feedback on a proposal
"""

import json
from typing import Any, Dict, List, Optional, Sequence

MAX_BREADCRUMBS = 30
MAX_VALUE_LENGTH = 100
MAX_BODY_LENGTH = 500


# ==========================================================================
# Formatters
# ==========================================================================

def format_stack_frame(frame: Dict[str, Any], include_context: bool = True) -> str:
    func = frame.get("function") or "<anonymous>"
    location = frame.get("absPath") or frame.get("filename") or "?"
    if frame.get("lineNo"):
        location = f"{location}:{frame['lineNo']}"
        if frame.get("colNo"):
            location = f"{location}:{frame['colNo']}"
    marker = "" if frame.get("inApp") else " [library]"
    lines = [f"  at {func} ({location}){marker}"]

    if include_context:
        for line_no, code in frame.get("context") or []:
            pointer = ">" if line_no == frame.get("lineNo") else " "
            lines.append(f"{pointer}{line_no:>6} | {code}")

    if frame.get("vars"):
        lines.append("     locals:")
        for key, value in frame["vars"].items():
            text = value if isinstance(value, str) else json.dumps(value, default=str)
            if len(text) > MAX_VALUE_LENGTH:
                text = text[:MAX_VALUE_LENGTH] + "..."
            lines.append(f"       {key} = {text}")

    return "\n".join(lines)


def format_exception(exception: Dict[str, Any]) -> str:
    module = f"{exception['module']}." if exception.get("module") else ""
    lines = [f"{module}{exception.get('type', 'Error')}: {exception.get('value', '')}"]

    mechanism = exception.get("mechanism")
    if mechanism:
        handled = "handled" if mechanism.get("handled") else "unhandled"
        lines.append(f"  ({mechanism.get('type')}, {handled})")

    frames = (exception.get("stacktrace") or {}).get("frames") or []
    if frames:
        lines.append("")
        # Sentry stores frames oldest first
        lines.extend(format_stack_frame(frame) for frame in reversed(frames))

    return "\n".join(lines)


def format_exceptions(exceptions: Sequence[Dict[str, Any]]) -> str:
    if not exceptions:
        return "No exception data available."
    parts = []
    for index, exception in enumerate(reversed(exceptions)):
        prefix = "" if index == 0 else "\nCaused by:\n"
        parts.append(prefix + format_exception(exception))
    return "\n".join(parts)


def format_breadcrumb(crumb: Dict[str, Any]) -> str:
    timestamp = crumb.get("timestamp") or ""
    time = timestamp.split("T", 1)[1][:8] if "T" in timestamp else timestamp
    level = crumb.get("level") or "info"
    level_text = f" ({level})" if level != "info" else ""
    category = crumb.get("category") or crumb.get("type") or ""
    message = crumb.get("message") or ""

    data = crumb.get("data") or {}
    if data:
        if "http" in (crumb.get("type"), crumb.get("category")):
            method = data.get("method", "")
            url = data.get("url", "")
            status = data.get("status_code") or data.get("statusCode") or ""
            if method or url:
                message = f"{method} {url}" + (f" -> {status}" if status else "")
        elif category == "console" and not message:
            message = str(data.get("message") or data.get("arguments") or "")

    return f"[{time}] {category}{level_text}: {message}".strip()


def format_breadcrumbs(breadcrumbs: Sequence[Dict[str, Any]], limit: int = MAX_BREADCRUMBS) -> str:
    if not breadcrumbs:
        return "No breadcrumbs available."
    recent = list(breadcrumbs)[-limit:]
    lines = []
    omitted = len(breadcrumbs) - len(recent)
    if omitted > 0:
        lines.append(f"... {omitted} earlier breadcrumbs omitted ...")
    lines.extend(format_breadcrumb(crumb) for crumb in recent)
    return "\n".join(lines)


def format_request(request: Dict[str, Any]) -> str:
    lines = [f"{request.get('method') or 'GET'} {request.get('url', '')}"]

    if request.get("query"):
        lines.append("\nQuery Parameters:")
        lines.extend(f"  {key}: {value}" for key, value in request["query"])

    if request.get("headers"):
        lines.append("\nHeaders:")
        for key, value in request["headers"]:
            lowered = key.lower()
            if "auth" in lowered or "cookie" in lowered:
                value = "[redacted]"
            lines.append(f"  {key}: {value}")

    if request.get("data"):
        body = request["data"]
        if not isinstance(body, str):
            body = json.dumps(body, indent=2, default=str)
        if len(body) > MAX_BODY_LENGTH:
            body = body[:MAX_BODY_LENGTH] + "...\n[truncated]"
        lines.append("\nBody:")
        lines.append(body)

    return "\n".join(lines)


def format_user(user: Dict[str, Any]) -> str:
    lines = []
    for key, label in (("id", "ID"), ("email", "Email"), ("username", "Username"), ("ipAddress", "IP")):
        if user.get(key):
            lines.append(f"{label}: {user[key]}")
    geo = user.get("geo") or {}
    location = ", ".join(str(geo[k]) for k in ("city", "region", "countryCode") if geo.get(k))
    if location:
        lines.append(f"Location: {location}")
    return "\n".join(lines) if lines else "No user information available."


def format_contexts(contexts: Dict[str, Any]) -> str:
    lines = []
    for key, label, fields in (
        ("browser", "Browser", ("name", "version")),
        ("os", "OS", ("name", "version")),
        ("device", "Device", ("brand", "model", "family")),
        ("runtime", "Runtime", ("name", "version")),
    ):
        values = contexts.get(key) or {}
        text = " ".join(str(values[f]) for f in fields if values.get(f))
        if text:
            lines.append(f"{label}: {text}")
    return "\n".join(lines)


def format_tags(tags: Dict[str, str]) -> str:
    return "\n".join(f"{key}: {tags[key]}" for key in sorted(tags))


def extract_stacktrace_files(data: Dict[str, Any]) -> List[str]:
    """In-app file paths mentioned in the stacktraces, in first-seen order."""
    files: List[str] = []
    for exception in data.get("exceptions") or []:
        for frame in (exception.get("stacktrace") or {}).get("frames") or []:
            if not (frame.get("inApp") and frame.get("filename")):
                continue
            path = frame.get("absPath") or frame["filename"]
            if path.startswith(("http", "<")) or path in files:
                continue
            files.append(path)
    return files


# ==========================================================================
# Prompts
# ==========================================================================

def _code_block(sections: List[str], title: str, body: str) -> None:
    sections.extend([f"## {title}", "", "```", body, "```", ""])


def _issue_context(project: str, data: Dict[str, Any]) -> List[str]:
    metadata = data.get("metadata") or {}
    sections = ["## Error Summary", "", f"**Title:** {data.get('title', '')}"]
    if metadata.get("type"):
        sections.append(f"**Type:** {metadata['type']}")
    if metadata.get("value"):
        sections.append(f"**Message:** {metadata['value']}")
    if data.get("culprit"):
        sections.append(f"**Culprit:** {data['culprit']}")
    sections.extend([f"**Project:** {project}", ""])

    def _or_unknown(key: str) -> Any:
        value = data.get(key)
        return "unknown" if value is None else value

    sections.extend([
        "## Impact",
        "",
        f"- **Events:** {_or_unknown('count')}",
        f"- **Users affected:** {_or_unknown('userCount')}",
        f"- **First seen:** {_or_unknown('firstSeen')}",
        f"- **Last seen:** {_or_unknown('lastSeen')}",
        "",
    ])

    if data.get("environment") or data.get("release"):
        sections.extend(["## Environment", ""])
        if data.get("environment"):
            sections.append(f"- **Environment:** {data['environment']}")
        if data.get("release"):
            sections.append(f"- **Release:** {data['release']}")
        sections.append("")

    if data.get("exceptions"):
        _code_block(sections, "Exception & Stacktrace", format_exceptions(data["exceptions"]))
    if data.get("breadcrumbs"):
        _code_block(
            sections,
            "Breadcrumbs (events leading up to error)",
            format_breadcrumbs(data["breadcrumbs"]),
        )
    if data.get("request"):
        _code_block(sections, "HTTP Request", format_request(data["request"]))
    if data.get("user"):
        sections.extend(["## User Context", "", format_user(data["user"]), ""])
    if data.get("contexts"):
        contexts = format_contexts(data["contexts"])
        if contexts:
            sections.extend(["## Runtime Context", "", contexts, ""])
    if data.get("tags"):
        sections.extend(["## Tags", "", format_tags(data["tags"]), ""])

    return sections


def build_analysis_prompt(project: str, data: Dict[str, Any]) -> str:
    """Prompt for the read-only analysis session."""
    sections = [f"# Issue Analysis: {data.get('shortId') or data.get('title', '')}", ""]
    sections.extend(_issue_context(project, data))
    sections.extend([
        "---",
        "",
        "## Your Task",
        "",
        "Analyze this error and propose a fix. You have read-only access to the codebase.",
        "",
        "### Steps",
        "",
        "1. **Read the source files** mentioned in the stacktrace to understand the code",
        "2. **Investigate the context** - look at related files, types, and dependencies",
        "3. **Identify the root cause** - why is this error happening?",
        "4. **Propose a specific fix** with file paths and code changes",
        "",
        "### Output Format",
        "",
        "Structure your response with these sections:",
        "",
        "#### Root Cause",
        "Explain what's causing the error and why.",
        "",
        "#### Proposed Fix",
        "Describe the specific changes needed. Include:",
        "- File paths",
        "- Code snippets showing the fix",
        "- Any new files or dependencies needed",
        "",
        "#### Risk Assessment",
        "Note any potential side effects, edge cases, or concerns with the fix.",
        "",
        "#### Testing Recommendations",
        "Suggest how to verify the fix works and doesn't introduce regressions.",
    ])
    return "\n".join(sections)


def build_fix_prompt(
    project: str,
    data: Dict[str, Any],
    proposal: str,
    branch: Optional[str] = None,
) -> str:
    """Prompt for the read-write fix session, carrying the approved proposal."""
    sections = [f"# Implement Fix: {data.get('shortId') or data.get('title', '')}", ""]
    sections.extend(_issue_context(project, data))
    sections.extend(["## Approved Proposal", "", proposal.strip(), "", "---", "", "## Your Task", ""])
    if branch:
        sections.append(f"You are working in an isolated git worktree on branch `{branch}`.")
    sections.extend([
        "Implement the approved proposal above.",
        "",
        "1. Make the code changes described in the proposal",
        "2. Add or update tests that cover the fix",
        "3. Run the relevant tests and make sure they pass",
        "4. Commit your changes with a descriptive message",
        "",
        "Do not make changes beyond the scope of the proposal. If the proposal turns out",
        "to be wrong, stop and explain why instead of improvising a different fix.",
    ])
    return "\n".join(sections)


def build_revision_prompt(feedback: str) -> str:
    """Follow-up prompt asking the analysis session to revise its proposal."""
    return "\n".join([
        "The reviewer requested changes to your proposal:",
        "",
        feedback.strip(),
        "",
        "Revise the proposal accordingly and answer with the complete updated proposal,",
        "using the same sections as before.",
    ])
