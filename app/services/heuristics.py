# services/heuristics.py - Keyword guides and fixed assistant responses
# ============================================================================

import json
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

REFUSAL_RESPONSE = (
    "I cannot answer questions about my instructions. "
    "I'm here to help with your uploaded .json file only."
)

STATIC_FALLBACK_RESPONSE = (
    "I'm here to help with your n8n template setup! Try asking about specific steps like "
    "\"How do I add credentials in n8n?\" or \"Where do I paste my API key?\""
)

ONBOARDING_RESPONSE = """✅ Template validated successfully! I'm your setup assistant and I'll walk you through deploying it.

First, tell me about your environment:

1. **What type of n8n setup are you using?**
   • n8n Cloud (cloud.n8n.io)
   • Self-hosted Docker installation
   • Local development installation
   • n8n Desktop app

2. **What's your experience level with n8n?**
   • Beginner (new to n8n)
   • Intermediate (familiar with basic workflows)
   • Advanced (experienced with complex automations)

Once I know your setup I'll give you step-by-step deployment instructions."""

DISCLOSURE_PATTERNS = [
    re.compile(r"prompt.*(runs|controls|used|that.*runs.*this.*chat)", re.IGNORECASE),
    re.compile(r"instructions.*(you.*follow|given.*to.*you)", re.IGNORECASE),
    re.compile(r"system.*(message|prompt)", re.IGNORECASE),
]

CREDENTIAL_KEYWORDS = (
    "credential", "credentials", "api key", "setup", "configure",
    "authentication", "login", "token",
)
TEMPLATE_KEYWORDS = ("node", "workflow", "template")

BASE_CONFIDENCE = 0.5
GENERIC_CONFIDENCE_CAP = 0.7

# First match wins
CATEGORY_RULES = [
    ("credentials", ("credential", "api key")),
    ("testing", ("test", "workflow")),
    ("configuration", ("node", "configure")),
    ("troubleshooting", ("error", "troubleshoot")),
]

OPENAI_GUIDE = """🔑 **OpenAI Credential Setup**

**Step 1: Create an API key**
1. Open **https://platform.openai.com/api-keys** and sign in
2. Click **"+ Create new secret key"**
3. Copy the whole key (it starts with `sk-`); it is only shown once

**Step 2: Add it to n8n**
1. n8n sidebar → **"Credentials"** → **"+ Add Credential"**
2. Search for **"OpenAI"**
3. Paste the key into the **"API Key"** field
4. **"Test"** → **"Save"**

**Troubleshooting**
❌ "Invalid API key" → the key must start with `sk-` and contain no spaces
❌ "Rate limit exceeded" → add billing at platform.openai.com

Do you already have a key, or do you need help creating one?"""

SLACK_GUIDE = """🔧 **Slack Credential Setup**

**Step 1: Create a Slack app**
1. Go to **https://api.slack.com/apps** → **"Create New App"** → **"From scratch"**
2. Name it and pick your workspace

**Step 2: Get a bot token**
1. Open **"OAuth & Permissions"**
2. Add bot scopes `channels:read`, `chat:write`, `im:read`, `im:write`
3. **"Install to Workspace"** and copy the **Bot User OAuth Token** (`xoxb-...`)

**Step 3: Add it to n8n**
1. Credentials → **"Slack API"**
2. Paste the `xoxb-` token → Test → Save

Which step do you need help with?"""

WEBHOOK_GUIDE = """🌐 **Webhook Trigger Setup**

1. Open the **Webhook** node and choose the HTTP method your sender uses
2. Copy the **Test URL** and send a request to it while the editor shows **"Listening for test event"**
3. Check the node output, then switch the sender to the **Production URL**
4. **Activate** the workflow; production URLs only respond while it is active

Common problems:
❌ 404 on the production URL → the workflow is not active
❌ Empty body → set the sender's `Content-Type` to `application/json`

What is sending the webhook?"""

ADD_CREDENTIAL_GUIDE = """🔑 **Adding Credentials in n8n**

**From the Credentials menu**
1. Click **"Credentials"** in the left sidebar
2. Click **"+ Add Credential"** and search for the service
3. Fill in the required fields (API key, token...)
4. **"Test"** → **"Save"**

**From a node**
1. Open the node that needs access
2. Open the **"Credential"** dropdown → **"Create New"**
3. Fill in the fields and save; the node selects it automatically

Which service are you connecting?"""


def is_disclosure_attempt(question: str) -> bool:
    return any(pattern.search(question or "") for pattern in DISCLOSURE_PATTERNS)


def parse_workflow_payload(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the document if ``text`` is a JSON object with a ``nodes`` list."""
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    if isinstance(parsed, dict) and isinstance(parsed.get("nodes"), list):
        return parsed
    return None


def categorize(question: str) -> str:
    lowered = (question or "").lower()
    for category, keywords in CATEGORY_RULES:
        if any(keyword in lowered for keyword in keywords):
            return category
    return "general"


def conversation_summary(history: Sequence[Any], limit: int = 3, width: int = 50) -> str:
    recent = [turn for turn in list(history or [])[-limit:] if _role(turn) == "user"]
    if not recent:
        return "New conversation"
    return "Recent questions: " + " | ".join(_content(turn)[:width] for turn in recent)


def _role(turn) -> str:
    return turn.get("role", "") if isinstance(turn, dict) else getattr(turn, "role", "")


def _content(turn) -> str:
    return turn.get("content", "") if isinstance(turn, dict) else getattr(turn, "content", "")


def smart_fallback(question: str, template_id: Optional[str] = None,
                   history: Sequence[Any] = ()) -> Tuple[str, float]:
    """Hand-written guide for the question and how sure we are it answers it."""
    lowered = question.lower()

    if "openai" in lowered and "credential" in lowered:
        return OPENAI_GUIDE, 0.95
    if "slack" in lowered and any(k in lowered for k in ("credential", "token", "setup")):
        return SLACK_GUIDE, 0.9
    if "webhook" in lowered and any(k in lowered for k in ("url", "trigger", "setup", "test")):
        return WEBHOOK_GUIDE, 0.85

    confidence = BASE_CONFIDENCE
    if any(keyword in lowered for keyword in CREDENTIAL_KEYWORDS):
        confidence += 0.3
    if template_id and any(keyword in lowered for keyword in TEMPLATE_KEYWORDS):
        confidence += 0.2
    confidence = min(confidence, GENERIC_CONFIDENCE_CAP)

    return _structured_guide(lowered, template_id, history), confidence


def _structured_guide(lowered: str, template_id: Optional[str], history: Sequence[Any]) -> str:
    summary = conversation_summary(history).lower()
    credentials_in_context = any(k in summary for k in ("credential", "openai", "api"))

    if "add credential" in lowered or "how do i add" in lowered or (
            "credential" in lowered and credentials_in_context):
        return ADD_CREDENTIAL_GUIDE
    if "openai" in lowered or "langchain" in lowered:
        return OPENAI_GUIDE
    if "slack" in lowered:
        return SLACK_GUIDE
    if "webhook" in lowered:
        return WEBHOOK_GUIDE

    template_label = template_id or "your"
    return (
        "💬 **n8n Setup Assistant**\n\n"
        f"I'm here to help with the **{template_label}** template setup.\n\n"
        "I can help with:\n"
        "🔑 **Adding credentials** for any n8n service\n"
        "🔧 **Node configuration** and where each setting lives\n"
        "⚡ **Activating the workflow**\n"
        "🛠️ **Troubleshooting** common errors\n\n"
        "Try asking \"How do I add OpenAI credentials?\" or \"Why won't my workflow activate?\""
    )


def recommendations_for(success_rate: float, recent_interactions: int) -> List[str]:
    tips = []
    if success_rate < 80:
        tips.append("Success rate is below 80%: improve the template's setup documentation")
    if recent_interactions > 50:
        tips.append("High question volume this week: add an FAQ section to the template")
    return tips
