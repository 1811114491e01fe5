"""
Prompt construction for the outfit analysis providers.

Both text providers render the same prompt so a cascade to the secondary
provider asks for exactly the same JSON contract.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from config.constants import DEFAULT_OCCASION


_OUTPUT_CONTRACT = """Return ONLY a JSON object with these keys:
{
  "feedback": string,
  "highlights": [string],
  "colorSuggestions": [{"name": string, "hex": "#RRGGBB", "reason": string}],
  "outfitRecommendations": [
    {
      "title": string,
      "description": string,
      "colorPalette": ["#RRGGBB", ...],
      "styleType": string,
      "occasion": string,
      "items": [string],
      "imagePrompt": string,
      "isExistingMatch": boolean
    }
  ],
  "notes": string,
  "imagePrompt": string
}
No markdown, no code fences, no commentary."""


@dataclass(frozen=True)
class AnalysisPrompt:
    """Everything a text provider needs to propose candidate outfits."""
    photo_data_uri: str
    gender: str
    occasion: str = DEFAULT_OCCASION
    genre: str = ""
    weather: str = ""
    skin_tone: str = ""
    dress_colors: Tuple[str, ...] = ()
    previous_recommendation: str = ""
    outfit_count: int = 3
    favored_colors: Tuple[str, ...] = ()
    favored_styles: Tuple[str, ...] = ()
    avoid_colors: Tuple[str, ...] = ()
    avoid_styles: Tuple[str, ...] = ()
    avoid_items: Tuple[str, ...] = ()
    exclude_titles: Tuple[str, ...] = ()

    @property
    def image_mime_type(self) -> str:
        header = self.photo_data_uri.split(";", 1)[0]
        return header.replace("data:", "", 1) or "image/jpeg"

    @property
    def image_base64(self) -> str:
        return self.photo_data_uri.split(",", 1)[1] if "," in self.photo_data_uri else ""

    def render(self, repair_feedback: Optional[str] = None) -> str:
        lines: List[str] = [
            "You are a professional fashion stylist.",
            f"Analyze the person's outfit and propose exactly {self.outfit_count} complete outfit recommendations.",
            "",
            f"Gender: {self.gender}",
            f"Occasion: {self.occasion or DEFAULT_OCCASION}",
        ]
        if self.genre:
            lines.append(f"Preferred style genre: {self.genre}")
        if self.weather:
            lines.append(f"Weather: {self.weather}")
        if self.skin_tone:
            lines.append(f"Skin tone: {self.skin_tone}")
        if self.dress_colors:
            lines.append(f"Colors detected in the current outfit: {', '.join(self.dress_colors)}")
        if self.previous_recommendation:
            lines.append(
                "Do not repeat this previous recommendation: "
                f"{self.previous_recommendation}"
            )

        personal = self._personalization_lines()
        if personal:
            lines.append("")
            lines.extend(personal)

        lines.extend([
            "",
            "Each outfit needs a 3-5 color palette as hex codes, concrete clothing items, "
            "and an imagePrompt describing a full-body fashion photograph of the outfit.",
            "",
            _OUTPUT_CONTRACT,
        ])

        if repair_feedback:
            lines.extend(["", repair_feedback])

        return "\n".join(lines)

    def _personalization_lines(self) -> List[str]:
        lines: List[str] = []
        if self.favored_colors:
            lines.append(f"The user tends to like these colors: {', '.join(self.favored_colors[:5])}")
        if self.favored_styles:
            lines.append(f"The user tends to like these styles: {', '.join(self.favored_styles[:5])}")
        avoid = list(self.avoid_colors) + list(self.avoid_styles) + list(self.avoid_items)
        if avoid:
            lines.append(f"Never use any of these: {', '.join(avoid)}")
        if self.exclude_titles:
            lines.append(f"Propose new outfits, different from: {'; '.join(self.exclude_titles)}")
        return lines


def build_repair_feedback(missing_fields: List[str]) -> str:
    """Correction appended to the prompt after a schema validation failure."""
    fields = ", ".join(missing_fields) if missing_fields else "unknown fields"
    return (
        "Previous response failed JSON schema validation. "
        f"Missing or incomplete fields: {fields}. "
        "Populate ALL required fields exactly as specified."
    )
