"""
Language-model disambiguation between several plausible platform listings.
Uses Google Gemini; without an API key every ambiguous case resolves to no match.
"""
import logging
import os
import re
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

DISAMBIGUATION_PROMPT = """You are matching restaurants across Japanese booking websites.

RESTAURANT:
{reference}

CANDIDATE LISTINGS ON {platform}:
{candidates}

Which candidate is the same physical restaurant? Consider the name (including
romanisation differences), neighborhood and phone number. Answer with only the
candidate number, or "none" if no candidate is clearly the same restaurant."""


class Disambiguator:
    """Asks Gemini to pick one candidate listing, or none"""

    def __init__(self, api_key: Optional[str] = None, model_name: str = "gemini-1.5-flash", model=None):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        self.model = model
        if self.model is None and self.api_key:
            import google.generativeai as genai
            genai.configure(api_key=self.api_key)
            self.model = genai.GenerativeModel(model_name)
            logger.info(f"Disambiguator initialized with Google Gemini ({model_name})")
        elif self.model is None:
            logger.info("Disambiguator disabled (no GEMINI_API_KEY set)")

    @property
    def enabled(self) -> bool:
        return self.model is not None

    def build_prompt(self, reference: Dict[str, Any], platform: str, candidates: List[Dict[str, Any]]) -> str:
        ref_lines = [f"Name: {reference.get('name')}"]
        for label, key in (("Area", "area"), ("City", "city"), ("Phone", "phone"), ("Address", "address")):
            if reference.get(key):
                ref_lines.append(f"{label}: {reference[key]}")

        cand_lines = []
        for i, candidate in enumerate(candidates, 1):
            line = f"{i}. {candidate.get('title', '')} | {candidate.get('link', '')}"
            if candidate.get('snippet'):
                line += f" | {candidate['snippet'][:200]}"
            cand_lines.append(line)

        return DISAMBIGUATION_PROMPT.format(
            reference="\n".join(ref_lines),
            platform=platform,
            candidates="\n".join(cand_lines),
        )

    @staticmethod
    def parse_answer(text: str, count: int) -> Optional[int]:
        """0-based index for a bare in-range integer answer; None for 'none' or anything else"""
        answer = (text or "").strip().strip('."\'').lower()
        if answer == "none":
            return None
        if not re.fullmatch(r'\d+', answer):
            logger.warning(f"Rejecting unparseable disambiguation answer: {text[:50]!r}")
            return None
        choice = int(answer)
        if 1 <= choice <= count:
            return choice - 1
        logger.warning(f"Rejecting out-of-range disambiguation answer: {choice} (of {count})")
        return None

    async def choose(self, reference: Dict[str, Any], platform: str,
                     candidates: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """
        Pick the candidate that is the same restaurant as reference.

        Returns:
            The chosen candidate, or None when the model says none, answers
            something unusable, or is not configured.
        """
        if not candidates:
            return None
        if not self.enabled:
            logger.info(f"{reference.get('name')}: {len(candidates)} ambiguous {platform} candidates, no model configured")
            return None

        prompt = self.build_prompt(reference, platform, candidates)
        try:
            response = await self.model.generate_content_async(prompt)
            text = response.text
        except Exception as e:
            logger.error(f"Gemini disambiguation failed: {e}")
            return None

        index = self.parse_answer(text, len(candidates))
        if index is None:
            return None
        return candidates[index]
