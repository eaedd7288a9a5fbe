"""`infer.*`: reflection over an agent's recent execution."""

import json
import logging
from typing import Any, Dict, Optional

from workflow_tools.interfaces import CapabilityModule, TextService

logger = logging.getLogger(__name__)

REFLECT_PROMPT = """Analyze system performance and suggest improvements:

AGENT: {agent}
ASPECT: {aspect}
DATA: {data}

Respond with JSON:
{{"reflection": "analysis of current state", "suggestions": ["..."], "priority": "high|medium|low"}}
"""


class InferCapabilities(CapabilityModule):
    def __init__(self, text_service: Optional[TextService] = None):
        self.text_service = text_service

    @property
    def name(self) -> str:
        return "infer"

    async def reflect(self, args, context):
        args = args if isinstance(args, dict) else {"aspect": args}
        agent = args.get("agent_id") or (context.agent_id if context is not None else "unknown")
        aspect = args.get("aspect", "general")

        if self.text_service is None:
            return self.summarize_trace(agent, aspect, context)

        data = args.get("data", context.memory if context is not None else {})
        prompt = REFLECT_PROMPT.format(agent=agent, aspect=aspect, data=json.dumps(data, default=str, indent=2))
        response = await self.text_service.complete(prompt)
        try:
            parsed = json.loads(response)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Reflection response was not JSON; returning raw text")
            return {"reflection": response, "suggestions": [], "source": "text_service"}
        if isinstance(parsed, dict):
            parsed.setdefault("source", "text_service")
            return parsed
        return {"reflection": parsed, "suggestions": [], "source": "text_service"}

    @staticmethod
    def summarize_trace(agent: str, aspect: str, context) -> Dict[str, Any]:
        """Local reflection: step counts and failures from the context trace."""
        trace = list(context.trace) if context is not None else []
        failed = [entry.step for entry in trace if not entry.success]
        suggestions = [f"Investigate failing step '{step}'" for step in dict.fromkeys(failed)]
        if failed:
            priority = "high" if len(failed) * 2 >= len(trace) else "medium"
        else:
            priority = "low"
        return {
            "reflection": f"{agent} ran {len(trace)} steps ({len(failed)} failed) while examining {aspect}",
            "suggestions": suggestions,
            "priority": priority,
            "source": "trace",
        }
