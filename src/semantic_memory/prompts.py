"""Default prompts for fact extraction and merge classification."""

import json
import re
from datetime import date

FACT_EXTRACTION_PROMPT = """You are a Personal Information Organizer, specialized in accurately storing facts, \
memories, and preferences. Extract relevant pieces of information from the input and organize them into \
distinct, self-contained facts suitable for later retrieval.

Focus on:
1. Personal preferences (likes, dislikes, food, products, activities, entertainment).
2. Important personal details (names, relationships, important dates).
3. Plans and intentions (upcoming events, trips, goals).
4. Health and wellness (dietary restrictions, fitness routines).
5. Professional details (job titles, work habits, career goals).
6. Miscellaneous details (favourite books, movies, brands).

Examples:

Input: Hi.
Output: {{"facts": []}}

Input: There are branches in trees.
Output: {{"facts": []}}

Input: I recently got promoted to a senior software engineer at my company. I prefer working from home.
Output: {{"facts": ["Promoted to senior software engineer", "Prefers working from home"]}}

Rules:
- Today's date is {today}.
- Do not return anything from the examples above.
- Record the facts in the same language as the input.
- If nothing is worth remembering, return an empty list.
- Respond with JSON only: an object with a "facts" key whose value is a list of strings.

Input: {content}
Output:"""

CLASSIFY_MEMORY_PROMPT = """You are a smart memory manager which controls the memory of a system.
Compare a newly retrieved fact with ONE existing memory and decide what to do with it:

- ADD: the new fact carries information the existing memory does not. Both should be kept.
- UPDATE: the new fact refines, corrects or supersedes the existing memory. Return the merged text in "text".
- DELETE: the new fact explicitly contradicts or retracts the existing memory, which should be removed.
- NONE: the new fact is already captured by the existing memory.

Existing memory:
{neighbor}

New fact:
{candidate}

Respond with JSON only, in this format:
{{"event": "ADD|UPDATE|DELETE|NONE", "text": "<merged memory text if UPDATE, else empty>", "reason": "<short justification>"}}"""


def _fill(template: str, **values: str) -> str:
    """Substitute ``{name}`` placeholders in one pass, leaving other braces and the values themselves alone."""
    pattern = re.compile("|".join(re.escape("{" + name + "}") for name in values))
    return pattern.sub(lambda m: values[m.group(0)[1:-1]], template)


def build_extraction_prompt(content: str, custom_prompt: str | None = None) -> str:
    """Render the extraction prompt; custom prompts without ``{content}`` get the input appended."""
    if custom_prompt:
        if "{content}" in custom_prompt:
            return _fill(custom_prompt, content=content)
        return f"{custom_prompt}\n\nInput: {content}"
    return FACT_EXTRACTION_PROMPT.format(today=date.today().isoformat(), content=content)


def build_classify_prompt(candidate: str, neighbor_id: str, neighbor_content: str, custom_prompt: str | None = None) -> str:
    neighbor = json.dumps({"id": neighbor_id, "text": neighbor_content}, ensure_ascii=False)
    if custom_prompt:
        if "{candidate}" in custom_prompt or "{neighbor}" in custom_prompt:
            return _fill(custom_prompt, candidate=candidate, neighbor=neighbor, content=candidate)
        return f"{custom_prompt}\n\nExisting memory:\n{neighbor}\n\nNew fact:\n{candidate}"
    template = CLASSIFY_MEMORY_PROMPT.replace("{{", "{").replace("}}", "}")
    return _fill(template, candidate=candidate, neighbor=neighbor)
