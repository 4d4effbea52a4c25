# ─────────────────────────────────────────────────────────────────────────────
# Prompt Templates: image synthesis + world generation prompts
# ─────────────────────────────────────────────────────────────────────────────

from worldgen.schemas import Quality

# ── World prompt: tier-specific scene descriptions ───────────────────────────
# Appended after the concept. Higher tiers ask for larger, more open spaces
# with more to explore; quick keeps the scene compact so it converges fast.

_WORLD_SUFFIXES: dict[Quality, str] = {
    Quality.QUICK: (
        "A compact, clearly lit 3D environment with a single focal area. "
        "Simple layout, realistic textures."
    ),
    Quality.STANDARD: (
        "A beautiful, immersive 3D environment with rich architectural details "
        "and atmospheric depth. Natural lighting, realistic textures, explorable "
        "space with clear pathways and interesting viewpoints."
    ),
    Quality.PREMIUM: (
        "A vast, breathtaking, fully explorable 3D world with sweeping open "
        "spaces, multiple distinct areas connected by pathways, layered "
        "foreground, midground and distant background, intricate architectural "
        "and natural detail, volumetric natural lighting and realistic "
        "materials throughout. Wide sightlines and many viewpoints worth visiting."
    ),
}


def get_world_prompt(concept: str, quality: Quality) -> str:
    """Text prompt sent alongside the image to the world generation service.

    Args:
        concept: The user's concept (e.g., "ancient rome").
        quality: Requested tier; unknown tiers fall back to standard.

    Returns:
        ``"<concept>. <tier description>"``
    """
    suffix = _WORLD_SUFFIXES.get(quality, _WORLD_SUFFIXES[Quality.STANDARD])
    return f"{concept.strip()}. {suffix}"


def get_image_prompt(concept: str) -> str:
    """Cinematic still used as the world's source image.

    Composition rules matter more than style: the world service reconstructs
    depth from layers, so the shot has to be wide with nothing blocking it.
    """
    return (
        f"Create a breathtakingly beautiful, cinematic wide-angle photograph of: {concept.strip()}\n"
        "\n"
        "VISUAL STYLE:\n"
        "- Dreamlike atmosphere with soft volumetric lighting\n"
        "- Golden hour or blue hour lighting with warm/cool color contrasts\n"
        "- High dynamic range with rich shadows and highlights\n"
        "\n"
        "COMPOSITION (critical for 3D):\n"
        "- Wide establishing shot showing the full environment\n"
        "- Clear foreground, midground, and background layers\n"
        "- Strong perspective lines leading into the scene\n"
        "- Open spaces that invite exploration\n"
        "- NO close-ups, NO people, NO animals, NO text\n"
        "\n"
        "TECHNICAL:\n"
        "- Ultra high resolution, sharp details, 16:9 aspect ratio\n"
        "- Natural, realistic textures (stone, wood, fabric, metal)\n"
        "- Consistent lighting direction throughout"
    )


def get_content_prompt(concept: str) -> str:
    """Ask the content model for the educational overlay shown in the viewer."""
    return (
        "You are an educational content creator for an immersive 3D learning "
        f'experience. A user has requested to explore: "{concept.strip()}"\n'
        "\n"
        "Return ONLY a JSON object with these keys:\n"
        '  "learningObjectives": 3-5 short strings,\n'
        '  "keyFacts": list of {"text", "source"},\n'
        '  "callouts": list of {"text", "anchor"} where anchor is one of '
        "center/left/right/top/bottom,\n"
        '  "narrationScript": a short narration paragraph,\n'
        '  "sources": list of {"label", "url"}'
    )


def world_display_name(concept: str, max_length: int = 64) -> str:
    """Human-readable world name, trimmed for the service's display field."""
    name = " ".join(concept.split())
    return name[:max_length] or "Untitled world"


def upload_file_name(concept: str, extension: str = "png") -> str:
    """Filesystem-safe asset name derived from the concept."""
    safe = "".join(c if c.isalnum() else "_" for c in concept.strip())
    return f"{safe[:48] or 'world'}.{extension}"
