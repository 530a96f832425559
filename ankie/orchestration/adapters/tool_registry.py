# ankie/orchestration/adapters/tool_registry.py

import logging
from typing import Dict, Iterable, List, Literal, Optional, Sequence

from langchain_core.tools import BaseTool
from pydantic import BaseModel

from ankie.orchestration.schema import HumanInterruptConfig

_log = logging.getLogger(__name__)

RiskLevel = Literal["low", "medium", "high"]


class ToolRisk(BaseModel):
    """Static approval policy for one tool."""

    risk_level: RiskLevel = "low"
    requires_approval: bool = False
    allow_edit: bool = True
    allow_respond: bool = True
    allow_ignore: bool = True
    description: str = ""

    def interrupt_config(self) -> HumanInterruptConfig:
        return HumanInterruptConfig(
            allow_accept=True,
            allow_edit=self.allow_edit,
            allow_respond=self.allow_respond,
            allow_ignore=self.allow_ignore,
        )


def _gated(level: RiskLevel, description: str, *, allow_edit: bool = True) -> ToolRisk:
    return ToolRisk(risk_level=level, requires_approval=True, allow_edit=allow_edit, description=description)


# Tools whose side effects are visible outside the conversation
TOOL_APPROVAL_CONFIG: Dict[str, ToolRisk] = {
    "sendGmailMessage": _gated("high", "Send an email on your behalf."),
    "deleteGmailMessage": _gated("high", "Permanently delete an email.", allow_edit=False),
    "createCalendarEvent": _gated("medium", "Create a calendar event and notify attendees."),
    "updateCalendarEvent": _gated("medium", "Modify an existing calendar event."),
    "deleteCalendarEvent": _gated("high", "Delete a calendar event.", allow_edit=False),
    "uploadFileToDrive": _gated("medium", "Upload a file to Google Drive."),
    "createDriveFolder": _gated("medium", "Create a folder in Google Drive."),
    "shareDriveFile": _gated("high", "Share a Drive file with other people."),
    "createNotionPage": _gated("medium", "Create a page in your Notion workspace."),
    "updateNotionPage": _gated("medium", "Modify a page in your Notion workspace."),
    "postTweet": _gated("high", "Publish a post on Twitter/X."),
    "createTwitterThread": _gated("high", "Publish a thread on Twitter/X."),
    "postTweetWithMedia": _gated("high", "Publish a post with media on Twitter/X."),
}

_LOW_RISK = ToolRisk()


class ToolRegistry:
    """
    Name -> tool lookup plus the approval policy of each tool.

    Tools are plain LangChain tools; the core only needs their name, their risk
    classification and `ainvoke(args, config)`.
    """

    def __init__(
        self,
        tools: Iterable[BaseTool] = (),
        risk_overrides: Optional[Dict[str, ToolRisk]] = None,
    ) -> None:
        self._tools: Dict[str, BaseTool] = {}
        self._risk: Dict[str, ToolRisk] = dict(TOOL_APPROVAL_CONFIG)
        self._risk.update(risk_overrides or {})
        for t in tools:
            self.register(t)

    def register(self, tool: BaseTool, risk: Optional[ToolRisk] = None) -> None:
        self._tools[tool.name] = tool
        if risk is not None:
            self._risk[tool.name] = risk
        _log.debug("Registered tool %s (risk=%s).", tool.name, self.risk_for(tool.name).risk_level)

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return sorted(self._tools)

    def tools_for(self, names: Sequence[str]) -> List[BaseTool]:
        """Registered tools among `names`; unknown names are skipped."""
        found = []
        for name in names:
            tool = self._tools.get(name)
            if tool is None:
                _log.debug("Tool %s is not registered; skipping.", name)
                continue
            found.append(tool)
        return found

    def risk_for(self, name: str) -> ToolRisk:
        return self._risk.get(name, _LOW_RISK)

    def requires_approval(self, name: str) -> bool:
        return self.risk_for(name).requires_approval
