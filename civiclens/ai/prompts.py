"""
CivicLens
Prompt templates for the three oracle questions.

Images are attached in the order the prompt names them.
"""

TRIAGE_PROMPT = """You are screening a citizen report for a municipal works department.

Reported category: {category}
Reported subcategory: {subcategory}
Title: {title}

Look at the attached photo and decide whether it genuinely shows a civic issue
of this kind (not a screenshot, stock photo or unrelated scene).

Return a JSON object with exactly these keys:
  "verified": true or false
  "confidence_score": integer from 0 to 100
  "summary": one sentence describing what the photo shows
  "severity": one of "low", "medium", "high", "critical"
"""

DUPLICATE_PROMPT = """You are de-duplicating citizen reports of civic issues ({category}).

Image 1 is a NEW report. Image 2 is an EXISTING open report filed within a few
metres of the same location.

Do these two images show the same specific physical defect, possibly
photographed from a different angle, distance or in different lighting?
Different defects of the same kind at the same spot are NOT the same.

Answer with exactly one word: 'YES' or 'NO'."""

REPAIR_PROMPT = """You are a municipal works inspector verifying a claimed repair.

Issue category: {category}
Issue title: {title}

Image 1 is the BEFORE photo taken when the issue was reported.
Image 2 is the AFTER photo submitted as evidence of the repair.

Is the defect shown in Image 1 now properly repaired in Image 2, at the same
location? If the images show different places, or the repair is incomplete,
answer NO.

Answer with exactly one word: 'YES' or 'NO'."""


def triage_prompt(category: str, subcategory: str | None, title: str) -> str:
    return TRIAGE_PROMPT.format(
        category=category or "unspecified",
        subcategory=subcategory or "unspecified",
        title=title or "untitled",
    )


def duplicate_prompt(category: str) -> str:
    return DUPLICATE_PROMPT.format(category=category or "unspecified")


def repair_prompt(category: str, title: str) -> str:
    return REPAIR_PROMPT.format(category=category or "unspecified", title=title or "untitled")
