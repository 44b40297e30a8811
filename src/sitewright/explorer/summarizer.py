"""Page summarizer: condenses a page's observations into one understanding."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from sitewright.exceptions import ModelInvocationError
from sitewright.llm.base import LLMProvider
from sitewright.llm.structured import TokenUsage, invoke_structured

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are a page summarizer. Condense observations about a web page into a clear, concise summary.

Focus on:
- What the page is for
- Key interactive elements (buttons, forms, lists)
- What happens when you interact with things
- How to navigate to/from this page

Be concise but complete. Call summarize() with your summary."""

USER_TEMPLATE = """\
Page: {page_id}

Current understanding:
{understanding}

Additional observations:
{observations}

Provide a condensed summary that incorporates all observations into a coherent understanding of this page."""


class PageSummary(BaseModel):
    """Provide the final summary for this page."""

    page_id: str = Field(default="", description="The page ID being summarized")
    summary: str = Field(description="Condensed understanding of the page")


class PageSummarizer:
    def __init__(self, llm: LLMProvider, *, usage: TokenUsage | None = None) -> None:
        self._llm = llm
        self._usage = usage

    def summarize(self, page_id: str, observations: list[str], understanding: str) -> str:
        """Return the condensed understanding of *page_id*.

        Without observations the current understanding is returned as is;
        when the model fails, the first observation is appended to it.
        """
        if not observations:
            return understanding

        prompt = USER_TEMPLATE.format(
            page_id=page_id,
            understanding=understanding or "(none)",
            observations="\n".join(f"{i}. {obs}" for i, obs in enumerate(observations, 1)),
        )
        try:
            answer = invoke_structured(
                self._llm,
                system=SYSTEM_PROMPT,
                prompt=prompt,
                schema=PageSummary,
                tool_name="summarize",
                usage=self._usage,
            )
        except ModelInvocationError as e:
            logger.warning("Summarizing %s failed: %s", page_id, e)
            return f"{understanding} {observations[0]}".strip()
        return answer.summary
