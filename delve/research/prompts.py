"""Prompt templates for the planner, reflector, writer, comparator and consolidator.

System prompts are module constants; the ``build_*`` helpers render the
per-call user prompt.  Structured capabilities are asked for bare JSON and
parsed by ``delve.research.capabilities``.
"""

from __future__ import annotations

from typing import Sequence

from delve.models.research import DepthProfile, KnowledgeGap, ProviderComparison, SearchResult
from delve.tools.providers import PROVIDERS
from delve.utils.clock import today_str

PLANNER_SYSTEM = """\
You are a research planning expert. Given a research query, create a research plan.

Create search queries that:
1. Cover different aspects and perspectives of the topic
2. Include both broad and specific angles
3. Consider recent developments and historical context
4. Look for expert opinions and data sources
5. Include potential counterarguments or alternative viewpoints

Return ONLY a JSON object with keys:
  "searchQueries": array of search strings
  "expectedOutcome": what the research should achieve
  "estimatedDurationMinutes": number
No prose, no markdown fences."""

REFLECTOR_SYSTEM = """\
You are a research quality analyst. Analyze the current research results and \
identify knowledge gaps. Be critical but realistic about what constitutes \
sufficient research depth.

Return ONLY a JSON object with keys:
  "hasGaps": boolean
  "gaps": array of {"topic", "description", "priority" ("low"|"medium"|"high"), "suggestedQueries": [..]}
  "shouldContinue": boolean
  "reasoning": short explanation
No prose, no markdown fences."""

FOLLOWUP_SYSTEM = """\
You generate web search queries that fill knowledge gaps in ongoing research.
Create 2-4 focused queries. Make them specific and actionable for web search.
Return ONLY a JSON array of strings. No prose, no markdown fences."""

WRITER_SYSTEM = """\
You are an expert research analyst. Write a well-structured research report in Markdown:

1. Executive Summary: clear answer, key findings, confidence and limitations
2. Detailed Analysis: perspectives, supporting evidence, critical reading of sources
3. Key Insights: most important and surprising findings, practical implications
4. Limitations and Future Research: acknowledged gaps, open questions
5. Sources and References: every source with attribution

Be objective. Cite sources naturally. Acknowledge uncertainty."""

COMPARATOR_SYSTEM = """\
You are an expert research analyst comparing reports on the same question \
written by different AI providers.

Return ONLY a JSON object with keys:
  "similarities": common findings across providers
  "differences": conflicting information or different emphases
  "complementaryInsights": how the providers' strengths complement each other
  "overallConfidence": number between 0 and 1 based on consensus and quality
No prose, no markdown fences."""

CONSOLIDATOR_SYSTEM = """\
You are an expert research analyst creating one consolidated report from \
several providers' independent reports. Sections:

1. Executive Summary (consensus findings, confidence, limitations)
2. Comprehensive Analysis (where providers agree and disagree, and why)
3. Multi-Perspective Insights
4. Confidence Assessment
5. Conclusions and Recommendations
6. Methodology Note (providers used, how conflicts were handled)

Synthesize rather than repeat."""

REPORT_EXCERPT_CHARS = 2000
CONTENT_EXCERPT_CHARS = 500


def provider_name(provider: str) -> str:
    spec = PROVIDERS.get(provider)
    return spec.display_name if spec else provider


def provider_strengths(providers: Sequence[str]) -> str:
    lines = []
    for p in providers:
        spec = PROVIDERS.get(p)
        if spec:
            lines.append(f"- {spec.display_name}: {', '.join(spec.strengths)}")
    return "\n".join(lines)


def build_plan_prompt(query: str, profile: DepthProfile) -> str:
    return (
        f"Today is {today_str()}.\n"
        f'Original Query: "{query}"\n'
        f"Research Depth: {profile.depth.value}\n"
        f"Instructions: {profile.instruction}\n\n"
        "Estimate duration in minutes from the number of queries and expected complexity."
    )


def build_reflect_prompt(query: str, results: Sequence[SearchResult], iteration: int, max_iterations: int) -> str:
    summary = "\n\n".join(
        f"{i}. {r.title} (Relevance: {r.relevance_score:.2f})\n   {r.snippet}"
        for i, r in enumerate(results, 1)
    )
    remaining = (
        "we have reached maximum iterations"
        if iteration + 1 >= max_iterations
        else "additional research would be valuable"
    )
    return (
        f'Original Query: "{query}"\n'
        f"Current Iteration: {iteration}\n"
        f"Number of Sources: {len(results)}\n\n"
        f"Search Results Summary:\n{summary or '(no results)'}\n\n"
        "Identify what is well covered, what is missing or unclear, which viewpoints "
        "are underrepresented, and what recent developments or data are missing.\n"
        f"Consider whether {remaining}."
    )


def build_followup_prompt(gaps: Sequence[KnowledgeGap]) -> str:
    listed = "\n\n".join(
        f"{i}. {g.topic} ({g.priority.value} priority)\n   {g.description}\n"
        f"   Suggested: {', '.join(g.suggested_queries)}"
        for i, g in enumerate(gaps, 1)
    )
    return f"Generate search queries to address these knowledge gaps:\n\n{listed}"


def build_write_prompt(query: str, results: Sequence[SearchResult], gaps: Sequence[KnowledgeGap]) -> str:
    sources = []
    for i, r in enumerate(results, 1):
        block = (
            f"{i}. **{r.title}** (Relevance: {r.relevance_score * 100:.1f}%)\n"
            f"   URL: {r.url}\n"
            f"   Summary: {r.snippet}"
        )
        if r.content:
            block += f"\n   Content: {r.content[:CONTENT_EXCERPT_CHARS]}..."
        sources.append(block)

    parts = [
        f'Original Research Question: "{query}"',
        f"Available Sources ({len(results)} total):\n" + "\n".join(sources),
    ]
    if gaps:
        parts.append(
            "Acknowledged Knowledge Gaps:\n"
            + "\n".join(
                f"{i}. {g.topic} ({g.priority.value} priority): {g.description}"
                for i, g in enumerate(gaps, 1)
            )
        )
    return "\n\n".join(parts)


def build_compare_prompt(query: str, reports: dict[str, str]) -> str:
    listed = "\n\n".join(
        f"{i}. {provider_name(p)} Report:\n{report[:REPORT_EXCERPT_CHARS]}..."
        for i, (p, report) in enumerate(reports.items(), 1)
    )
    return (
        f'Original Research Query: "{query}"\n\n'
        f"Provider Reports:\n{listed}\n\n"
        f"Consider each provider's strengths:\n{provider_strengths(list(reports))}"
    )


def build_consolidate_prompt(query: str, reports: dict[str, str], comparison: ProviderComparison) -> str:
    listed = "\n\n".join(f"## {provider_name(p)} Analysis\n{report}" for p, report in reports.items())
    return (
        f'Original Research Query: "{query}"\n\n'
        f"You have reports from {len(reports)} providers:\n{provider_strengths(list(reports))}\n\n"
        f"Provider Reports:\n{listed}\n\n"
        "Cross-Provider Analysis:\n"
        f"**Common Insights:** {'; '.join(comparison.similarities)}\n"
        f"**Key Differences:** {'; '.join(comparison.differences)}\n"
        f"**Complementary Insights:** {'; '.join(comparison.complementary_insights)}\n"
        f"**Overall Confidence:** {round(comparison.overall_confidence * 100)}%"
    )


def fallback_consolidated_report(reports: dict[str, str]) -> str:
    """Concatenation of raw provider reports used when consolidation fails."""
    sections = "\n\n".join(f"### {provider_name(p)}\n\n{report}" for p, report in reports.items())
    return (
        "# Multi-Provider Research Report\n\n"
        "**Error**: Could not generate consolidated report due to technical issues.\n\n"
        "## Individual Provider Reports\n\n"
        f"{sections}\n"
    )
