"""Script synthesis stage: length-constrained rewrite of the transcript."""
import logging
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

MIN_WORDS = 200
MAX_WORDS = 250

SYSTEM_PROMPT = (
    "You are an expert writer of viral short-form video scripts. "
    "Rewrite transcripts into a single flowing narration that stays faithful "
    "to the original content. Never invent facts. Do not use emojis, lists, "
    "headings, numbered parts, brackets or any formatting."
)

EMOJI_PATTERN = re.compile(
    "[\U0001F300-\U0001FAFF\U00002600-\U000027BF\U0001F1E6-\U0001F1FF\U0000FE0F]",
    flags=re.UNICODE,
)

# "Part 1:", "Segment 2 -", "1.", "- " and similar line prefixes
LABEL_PATTERN = re.compile(
    r"^\s*(?:(?:part|partie|segment|section|step|scene|scène|étape)\s*\d*\s*[:.)\-]+"
    r"|\d+\s*[.):\-]+|[-*•]+)\s*",
    flags=re.IGNORECASE | re.MULTILINE,
)


@dataclass
class ScriptResult:
    """Script synthesis output."""
    text: str
    word_count: int
    source: str  # "generated", "extended" or "original"
    error: Optional[str] = None


def clean_source_text(text: str) -> str:
    """Remove emojis and non-printable characters before prompting."""
    text = EMOJI_PATTERN.sub("", text or "")
    text = "".join(ch if ch.isprintable() or ch in "\n " else " " for ch in text)
    return re.sub(r"[ \t]+", " ", text).strip()


def sanitize_script(text: str) -> str:
    """
    Strip everything narration and subtitles cannot carry.

    Removes list and segment labels, braces, brackets, slashes, digits
    and punctuation other than . , ! ? ' and -.
    """
    text = LABEL_PATTERN.sub("", text or "")
    text = re.sub(r"[\[\]{}()<>/\\|]", " ", text)
    text = re.sub(r"\d", "", text)
    text = re.sub(r"[^\w\s.,!?'\-]", " ", text)
    text = text.replace("_", " ")
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"\s+([.,!?])", r"\1", text)
    return text.strip()


def count_words(text: str) -> int:
    return len(text.split())


def build_rewrite_prompt(transcript: str, target_duration: float, language: str) -> str:
    return (
        f"Rewrite this transcript into a viral narration script of about "
        f"{target_duration:.0f} seconds.\n"
        f"- Write between {MIN_WORDS} and {MAX_WORDS} words\n"
        f"- Use ONLY information from the transcript\n"
        f"- Dynamic, engaging spoken style, one continuous text\n"
        f"- Write numbers out in words\n"
        f"- Language: {language}\n\n"
        f"Transcript:\n{transcript}"
    )


def build_extension_prompt(script: str, word_count: int) -> str:
    return (
        f"This script has only {word_count} words. Lengthen it to between "
        f"{MIN_WORDS} and {MAX_WORDS} words while preserving its meaning, tone and "
        f"language. Do not add new facts.\n\nScript:\n{script}"
    )


async def synthesize_script(
    transcript: str,
    text_backend,
    target_duration: float = 85.0,
    language: str = "fr",
    progress_callback=None,
) -> ScriptResult:
    """
    Rewrite a transcript into a sanitized narration script. Never raises.

    On any backend failure the original transcript is returned verbatim.
    """
    async def report(pct: float, message: str):
        if progress_callback:
            await progress_callback(pct, message)

    source_text = clean_source_text(transcript)
    if not source_text:
        logger.warning("Empty transcript after cleaning, skipping script generation")
        return ScriptResult(text=transcript, word_count=count_words(transcript), source="original")

    try:
        await report(10, "Generating script...")
        raw = await text_backend.complete(
            SYSTEM_PROMPT,
            build_rewrite_prompt(source_text, target_duration, language),
            temperature=0.5,
        )
        script = sanitize_script(raw)
        word_count = count_words(script)
        logger.info(f"Generated script with {word_count} words")
        source = "generated"

        if word_count < MIN_WORDS:
            await report(60, f"Script too short ({word_count} words), extending...")
            raw = await text_backend.complete(
                SYSTEM_PROMPT,
                build_extension_prompt(script, word_count),
                temperature=0.5,
            )
            script = sanitize_script(raw)
            word_count = count_words(script)
            logger.info(f"Extended script to {word_count} words")
            source = "extended"

        if not script:
            raise ValueError("Backend returned an empty script")
    except Exception as e:
        logger.error(f"Script generation failed: {e}, using the original transcript")
        return ScriptResult(
            text=transcript,
            word_count=count_words(transcript),
            source="original",
            error=f"Script generation failed: {e}",
        )

    await report(100, "Script ready")
    return ScriptResult(text=script, word_count=word_count, source=source)
