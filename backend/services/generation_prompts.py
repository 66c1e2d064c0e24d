"""
Book generation prompt variants.

Each builder takes (year, month, batch_size) and returns the prompt text
sent to every generative provider, so providers are compared on
identical input. 'annual' treats month as the batch number within the
year.
"""
import calendar
from typing import Callable, Dict

from constants import PROMPT_VARIANT_BASELINE, PROMPT_VARIANT_CONTEMPORARY

PROMPT_VARIANT_DIVERSITY = 'diversity-emphasis'
PROMPT_VARIANT_OVERLOOKED = 'overlooked-significance'
PROMPT_VARIANT_ANNUAL = 'annual'

_METADATA_REQUIREMENTS = """METADATA REQUIREMENTS for each book:
1. **title**: Full book title (exact as published)
2. **author**: Primary author's name (full name preferred)
3. **publisher**: Publishing house name
4. **format**: Primary format ("Hardcover", "Paperback", "eBook", "Audiobook", or "Unknown")
5. **publication_year**: {year}
6. **significance** (optional): {significance}"""


def _requirements(year: int, significance: str) -> str:
    return _METADATA_REQUIREMENTS.format(year=year, significance=significance)


def _closing(batch_size: int) -> str:
    return f"Return ONLY a valid JSON array of exactly {batch_size} books."


def build_baseline_prompt(year: int, month: int, batch_size: int = 20) -> str:
    return f"""Generate a curated list of exactly {batch_size} historically significant books published in {calendar.month_name[month]} {year}.

SELECTION CRITERIA - Prioritize quality over quantity:
- NYT Bestsellers (Fiction & Non-fiction)
- Literary awards: Pulitzer, Booker Prize, Hugo, National Book Award, etc.
- Critical acclaim or lasting cultural impact
- Breakthrough debuts that shaped their genre
- High-selling popular fiction (mystery, romance, sci-fi, fantasy, thriller)
- Influential non-fiction (memoir, history, science, self-help, politics)

{_requirements(year, "Why this book is historically important (1-2 sentences)")}

{_closing(batch_size)}"""


def build_contemporary_prompt(year: int, month: int, batch_size: int = 20) -> str:
    return f"""Generate a curated list of exactly {batch_size} notable books published in {calendar.month_name[month]} {year}.

These are recent releases, so only include books you can verify were actually published in this month:
- Bestseller list appearances in the weeks after release
- Award longlists and shortlists for {year}
- Widely reviewed debuts and major releases from established authors
- Notable non-fiction on current events, science and culture

If you do not have verifiable information for this month, reply with {{"error": "insufficient verifiable data"}} instead of guessing.

{_requirements(year, "Why this book drew attention on release (1-2 sentences)")}

{_closing(batch_size)}"""


def build_diversity_prompt(year: int, month: int, batch_size: int = 20) -> str:
    return f"""Generate a curated list of exactly {batch_size} historically or culturally significant books from {calendar.month_name[month]} {year}.

PRIORITIZE (in order of importance):
1. Non-English language editions
2. Small and independent publishers
3. Regional presses from underrepresented areas (Latin America, Africa, Asia, Eastern Europe)
4. Translated works that reached international audiences
5. Books that shaped specific communities or movements

AVOID mainstream bestsellers from the largest publishing groups and US/UK-only perspectives.
Aim for at least 30-40% non-English or non-US/UK titles.

{_requirements(year, "Why this book is culturally important (1-2 sentences)")}

{_closing(batch_size)}"""


def build_overlooked_prompt(year: int, month: int, batch_size: int = 20) -> str:
    return f"""Generate a curated list of exactly {batch_size} books from {calendar.month_name[month]} {year} that were culturally or historically significant but NOT commercial bestsellers.

TARGET BOOKS:
- Critical darlings that didn't sell well initially
- Award-nominated works that weren't bestsellers
- Genre-influential books that shaped later trends
- Cult classics discovered later

AVOID bestseller-list books, movie tie-ins and celebrity books.

{_requirements(year, "Why this book matters despite low sales (1-2 sentences)")}

{_closing(batch_size)}"""


def build_annual_prompt(year: int, batch_number: int, batch_size: int = 20) -> str:
    start_rank = (batch_number - 1) * batch_size + 1
    end_rank = batch_number * batch_size
    return f"""You are a historical literary database extracting culturally significant works from {year}.

BATCH CONTEXT: Provide books ranked {start_rank}-{end_rank} by cultural significance.

SELECTION CRITERIA:
- Lasting cultural impact or critical acclaim
- High sales volume or commercial success
- Award winners and genre-defining works
- Literary fiction, genre fiction, and non-fiction alike

{_requirements(year, "Why this book matters (1-2 sentences)")}

{_closing(batch_size)}"""


PROMPT_VARIANTS: Dict[str, Callable[[int, int, int], str]] = {
    PROMPT_VARIANT_BASELINE: build_baseline_prompt,
    PROMPT_VARIANT_CONTEMPORARY: build_contemporary_prompt,
    PROMPT_VARIANT_DIVERSITY: build_diversity_prompt,
    PROMPT_VARIANT_OVERLOOKED: build_overlooked_prompt,
    PROMPT_VARIANT_ANNUAL: build_annual_prompt,
}


def build_prompt(variant: str, year: int, month: int, batch_size: int = 20) -> str:
    """
    Raises:
        ValueError: unknown variant, or month outside 1-12 for monthly variants
    """
    builder = PROMPT_VARIANTS.get(variant)
    if builder is None:
        raise ValueError(
            f"Unknown prompt variant {variant!r}. Valid: {', '.join(sorted(PROMPT_VARIANTS))}"
        )
    if variant != PROMPT_VARIANT_ANNUAL and not 1 <= month <= 12:
        raise ValueError(f"Invalid month {month}: must be 1-12")
    return builder(year, month, batch_size)
