# services/setup_guide.py - Setup instructions for a purchased workflow
# ============================================================================
#
# The LLM is asked for a {name, description} JSON object. When that path
# fails the guide is built from the workflow's own nodes.

import json
import logging
from typing import Any, Dict, List, Optional

from app.core.errors import LLMUnavailableError
from app.services.catalog import NODE_TYPE_PREFIX, load_workflow
from app.services.llm import LLMClient

logger = logging.getLogger(__name__)

SETUP_MAX_TOKENS = 1500
SETUP_TEMPERATURE = 0.1
MAX_WORKFLOW_CHARS = 8000
MAX_LISTED_SERVICES = 5
IGNORED_SERVICES = {"start", "set", "noop", "if", "switch"}

SETUP_PROMPT = """You write setup guides for n8n workflow templates.

Reply with ONLY a JSON object of this shape, no prose around it:
{"name": "<short title>", "description": "<markdown setup guide>"}

The guide must cover importing the workflow, configuring each credential,
testing, and activating it."""


class SetupSource:
    LLM = "llm"
    FALLBACK = "structured_fallback"


def node_types(workflow: Dict[str, Any]) -> List[str]:
    nodes = workflow.get("nodes")
    if not isinstance(nodes, list):
        return []
    return [n["type"] for n in nodes if isinstance(n, dict) and isinstance(n.get("type"), str)]


def workflow_services(types: List[str]) -> List[str]:
    services = []
    for node_type in types:
        name = node_type[len(NODE_TYPE_PREFIX):] if node_type.startswith(NODE_TYPE_PREFIX) else node_type
        if name.lower() in IGNORED_SERVICES or name in services:
            continue
        services.append(name)
    return services[:MAX_LISTED_SERVICES]


def workflow_kind(types: List[str]) -> str:
    lowered = " ".join(types).lower()
    if "openai" in lowered or "langchain" in lowered:
        return "AI-Powered Automation"
    if "webhook" in lowered:
        return "Webhook-Based Integration"
    if "slack" in lowered or "discord" in lowered:
        return "Communication Automation"
    return "General Automation"


def title_from_id(template_id: str) -> str:
    return template_id.replace("_", " ").replace("-", " ").title()


def fallback_instructions(workflow: Any, template_id: str) -> Dict[str, Any]:
    document = load_workflow(workflow)
    types = node_types(document)
    services = workflow_services(types)
    kind = workflow_kind(types)
    title = title_from_id(template_id)

    lines = [
        f"# {title} Setup Guide",
        "",
        "## Overview",
        f"This {kind.lower()} workflow has {len(types)} nodes"
        + (f" and connects {', '.join(services)}." if services else "."),
        "",
        "## Quick Setup Guide",
        "",
        "### 1. Import the workflow",
        "- In n8n open **Workflows → Import from File** and choose the downloaded JSON",
        "",
        "### 2. Configure services",
    ]
    if services:
        for service in services:
            lines.append(f"- **{service}**: open **Credentials → Add Credential → {service}** and connect your account")
    else:
        lines.append("- No external credentials are needed")
    lines += [
        "",
        "### 3. Test and activate",
        "- Click **Execute Workflow** and check every node turns green",
        "- Toggle **Active** in the top right once the test run succeeds",
        "",
        "## Troubleshooting",
        "- Red node: open it and re-select the credential",
        "- Authentication errors: reconnect the account and check its permissions",
        "",
        "## Need Help?",
        "Ask the template assistant with the node name and the error message.",
        "",
        "---",
        f"Template ID: {template_id} | Nodes: {len(types)} | Services: {', '.join(services) or 'none'}",
    ]
    return {
        "success": True,
        "instructions": "\n".join(lines),
        "source": SetupSource.FALLBACK,
        "metadata": {"nodeCount": len(types), "services": services, "workflowType": kind},
    }


def parse_guide(content: str) -> Optional[Dict[str, str]]:
    """The {name, description} object in an LLM reply, tolerating a code fence."""
    text = content.strip()
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        guide = json.loads(text[start:end + 1])
    except ValueError:
        return None
    if not isinstance(guide, dict):
        return None
    name, description = guide.get("name"), guide.get("description")
    if not isinstance(name, str) or not isinstance(description, str) or not description.strip():
        return None
    return {"name": name.strip(), "description": description.strip()}


async def generate_setup_instructions(
    workflow: Any, template_id: str, llm: Optional[LLMClient] = None
) -> Dict[str, Any]:
    llm = llm or LLMClient()
    if not llm.enabled:
        return fallback_instructions(workflow, template_id)

    document = load_workflow(workflow)
    question = (
        f"Template ID: {template_id}\n"
        f"Workflow JSON:\n{json.dumps(document)[:MAX_WORKFLOW_CHARS]}"
    )
    try:
        content = await llm.complete(
            SETUP_PROMPT, question, max_tokens=SETUP_MAX_TOKENS, temperature=SETUP_TEMPERATURE
        )
    except LLMUnavailableError as e:
        logger.warning(f"⚠️ Setup guide LLM call failed, using structured fallback: {e}")
        return fallback_instructions(workflow, template_id)

    guide = parse_guide(content)
    if guide is None:
        logger.warning(f"⚠️ Unparseable setup guide for {template_id}, using structured fallback")
        return fallback_instructions(workflow, template_id)

    return {
        "success": True,
        "instructions": f"# {guide['name']}\n\n{guide['description']}",
        "source": SetupSource.LLM,
    }
