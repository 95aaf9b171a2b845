"""
Style Library - hidden prompts behind each visual style.
Users pick a style id, we inject the character-styling and scene prompts.
"""

CHARACTER_PREFIX = (
    "Character portrait for animated story. Create a detailed stylized version of this "
    "character that can be used consistently across multiple scenes. Focus on capturing "
    "the character's unique identifying features, expression, and personality."
)

IDENTITY_SUFFIX = (
    "CRITICAL: Preserve the exact appearance, proportions, fur color/pattern (if pet), "
    "skin tone, and distinctive features from the reference image. The character must "
    "be instantly recognizable."
)

STYLES = {
    "pixar": {
        "id": "pixar",
        "name": "Pixar 3D",
        "scene_prompt": "3D cartoon style, Disney Pixar animation, smooth rendering, vibrant",
        "character_prompt": (
            f"{CHARACTER_PREFIX} Style: Pixar/Disney 3D animation render with big expressive "
            "eyes, smooth stylized features, vibrant saturated colors, professional studio "
            f"lighting. {IDENTITY_SUFFIX}"
        ),
    },
    "comic": {
        "id": "comic",
        "name": "Quadrinho",
        "scene_prompt": "Comic book Spider-Verse style, bold ink outlines, halftone dots, cinematic",
        "character_prompt": (
            f"{CHARACTER_PREFIX} Style: Comic book art inspired by Spider-Verse animation, bold "
            "black ink outlines with varying line weights, Ben-Day halftone dots, cel-shading "
            f"with warm cinematic color grading. {IDENTITY_SUFFIX}"
        ),
    },
    "oilpainting": {
        "id": "oilpainting",
        "name": "Pintura a Oleo",
        "scene_prompt": "oil painting style, bold brushstrokes, dramatic lighting, expressive features",
        "character_prompt": (
            f"{CHARACTER_PREFIX} Style: Classical oil painting with dramatic chiaroscuro "
            "lighting, rich saturated colors and bold impasto brushstrokes on the character's "
            f"defining features. {IDENTITY_SUFFIX}"
        ),
    },
    "watercolor": {
        "id": "watercolor",
        "name": "Aquarela",
        "scene_prompt": (
            "watercolor painting with Pixar caricature influence, soft brushstrokes, "
            "charming stylized features"
        ),
        "character_prompt": (
            f"{CHARACTER_PREFIX} Style: Elegant watercolor with subtle Pixar-inspired "
            "caricature, soft wet-on-wet washes, pastel palette, visible paper texture. "
            f"{IDENTITY_SUFFIX}"
        ),
    },
    "sketch": {
        "id": "sketch",
        "name": "Esboco",
        "scene_prompt": "pencil sketch style, graphite shading, loose hand-drawn lines, paper texture",
        "character_prompt": (
            f"{CHARACTER_PREFIX} Style: Hand-drawn graphite pencil sketch, confident contour "
            f"lines, cross-hatched shading, off-white sketchbook paper. {IDENTITY_SUFFIX}"
        ),
    },
}


def get_style(style_id: str) -> dict:
    """Get full style config. Raises if style not found."""
    style = STYLES.get(style_id)
    if not style:
        raise ValueError(f"Unknown style: {style_id}. Available: {list(STYLES.keys())}")
    return style


def display_name(style_id: str) -> str:
    """Capitalized style id, as used in default generation names."""
    return style_id[:1].upper() + style_id[1:] if style_id else "Projeto"
