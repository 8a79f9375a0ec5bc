"""
Шаблоны промптов по трендам. Один фиксированный текст на тренд + пользовательское уточнение.
"""
import re


SYSTEM_INSTRUCTION = (
    "You are a professional photo retoucher and art director. "
    "Preserve the identity of the people in the reference photos exactly."
)

TRENDS: dict[str, str] = {
    "MAGAZINE": "A glossy fashion magazine cover shoot, studio lighting, editorial styling.",
    "COUPLE": "A romantic couple photoshoot, golden hour, soft natural light.",
    "RETRO_2K17": "A 2017 Instagram aesthetic photo, warm filter, casual city background.",
    "PROFESSIONAL": "A professional business headshot, neutral backdrop, soft key light.",
    "CUSTOM": "A high-end portrait photograph following the user's description.",
    "OLD_MONEY": "Quiet luxury old money style, linen and cashmere, country club setting.",
    "ETHEREAL": "An ethereal dreamy portrait, pastel haze, delicate backlight.",
    "OFFICE_SIREN": "Office siren aesthetic, sleek tailoring, rimless glasses, modern office.",
    "MINIMALIST": "A minimalist portrait, clean monochrome background, sculpted light.",
    "NEON_CYBER": "A neon cyberpunk night portrait, rain reflections, magenta and cyan light.",
    "COQUETTE": "Coquette aesthetic, bows and lace, soft pink palette.",
    "DARK_ACADEMIA": "Dark academia portrait, old library, tweed and candlelight.",
    "Y2K_POP": "Y2K pop aesthetic, glossy chrome, bright saturated colors.",
    "COTTAGECORE": "Cottagecore portrait, wildflower meadow, vintage dress, sunlight.",
    "A_LA_RUSSE": "A la russe style, fur hat, winter landscape, rich folk ornaments.",
    "MOB_WIFE": "Mob wife aesthetic, fur coat, gold jewelry, dramatic makeup.",
    "CYBER_ANGEL": "Cyber angel portrait, iridescent wings, futuristic white studio.",
    "SPORT_CHIC": "Sport chic editorial, premium athleisure, stadium lights.",
}

MAX_PROMPT_TEXT = 500
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_prompt(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = _CONTROL_CHARS.sub(" ", value).strip()
    return cleaned[:MAX_PROMPT_TEXT] or None


def build_generation_prompt(
    trend: str,
    selected_images_count: int,
    user_prompt: str | None = None,
    dominant_color: str | None = None,
) -> tuple[str, str]:
    """Returns (system_instruction, final_prompt)."""
    if trend not in TRENDS:
        raise ValueError("Неверный тип стиля")
    people = 2 if trend == "COUPLE" else 1
    lines = [TRENDS[trend]]
    if dominant_color:
        lines.append(f"Dominant color: {sanitize_prompt(dominant_color)}.")
    extra = sanitize_prompt(user_prompt)
    if extra:
        lines.append(f"Additional details: {extra}")
    lines.append(
        "CRITICAL EXECUTION:\n"
        "1. OUTPUT: Generate exactly ONE single image. No collages, grids or multiple photos.\n"
        f"2. SUBJECT COUNT: The photo must show exactly {people} distinct person(s).\n"
        f"3. FACE: Must look exactly like the uploaded subject(s) "
        f"(the first {selected_images_count} images are reference photos).\n"
        "4. QUALITY: Cinematic, detailed, expensive."
    )
    return SYSTEM_INSTRUCTION, "\n\n".join(lines)
