"""Translate requested effects into an FFmpeg argument list.

Effects are always applied in one canonical order, whatever order the
client asked for, because effect order changes the output:

    1. watermark  - overlay image as a second input, bottom-right corner
    2. blur       - box blur on the (watermarked) picture
    3. speed      - time-domain change: setpts on video, atempo on audio

All effects are compiled into a single -filter_complex graph so that they
compose instead of overriding each other.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .models import EffectSettings, EncoderSettings

WATERMARK = "watermark"
BLUR = "blur"
SPEED = "speed"

EFFECT_ORDER = (WATERMARK, BLUR, SPEED)
SUPPORTED_EFFECTS = frozenset(EFFECT_ORDER)


class UnknownEffectError(ValueError):
    """An effect name is not in SUPPORTED_EFFECTS."""

    def __init__(self, names: Iterable[str]):
        self.names = sorted(set(names))
        super().__init__(
            f"Unknown effect(s): {', '.join(self.names)} "
            f"(supported: {', '.join(EFFECT_ORDER)})"
        )


@dataclass
class EncodePlan:
    """Argument list for one encode plus what progress tracking needs to know."""

    args: List[str]
    effects: List[str] = field(default_factory=list)
    time_scale: float = 1.0  # output duration / input duration


def canonical_effects(requested: Iterable[str]) -> List[str]:
    """Validate and order effect names. Duplicates collapse to one.

    Raises:
        UnknownEffectError: if any name is not supported
    """
    names = [name.strip().lower() for name in requested]
    unknown = [name for name in names if name not in SUPPORTED_EFFECTS]
    if unknown:
        raise UnknownEffectError(unknown)
    return [name for name in EFFECT_ORDER if name in names]


def build_encode_plan(
    input_reference: str,
    requested_effects: Iterable[str],
    output_path: str,
    encoder: Optional[EncoderSettings] = None,
    effects: Optional[EffectSettings] = None,
    has_audio: bool = True,
) -> EncodePlan:
    """Build the deterministic FFmpeg argument list (binary not included).

    Same inputs always produce the same list. With has_audio=False the speed
    effect retimes video only, since [0:a] would not resolve.
    """
    encoder = encoder or EncoderSettings()
    effects = effects or EffectSettings()
    ordered = canonical_effects(requested_effects)

    args = ["-y", "-i", input_reference]
    if WATERMARK in ordered:
        args.extend(["-i", effects.watermark_path])

    filters = []
    video = "[0:v]"
    audio = None
    step = 0

    if WATERMARK in ordered:
        step += 1
        margin = effects.watermark_margin_px
        filters.append(
            f"{video}[1:v]overlay=main_w-overlay_w-{margin}:main_h-overlay_h-{margin}[v{step}]"
        )
        video = f"[v{step}]"

    if BLUR in ordered:
        step += 1
        filters.append(f"{video}boxblur={effects.blur_radius}:1[v{step}]")
        video = f"[v{step}]"

    time_scale = 1.0
    if SPEED in ordered:
        step += 1
        factor = effects.speed_factor
        filters.append(f"{video}setpts=PTS/{factor:g}[v{step}]")
        video = f"[v{step}]"
        if has_audio:
            filters.append(f"[0:a]atempo={factor:g}[a{step}]")
            audio = f"[a{step}]"
        time_scale = 1.0 / factor

    if filters:
        args.extend(["-filter_complex", ";".join(filters), "-map", video])
        args.extend(["-map", audio] if audio else ["-map", "0:a?"])

    args.extend([
        "-c:v", encoder.video_codec,
        "-preset", encoder.preset,
        "-crf", str(encoder.crf),
        "-c:a", encoder.audio_codec,
        "-b:a", encoder.audio_bitrate,
        "-movflags", "+faststart",
        output_path,
    ])

    return EncodePlan(args=args, effects=ordered, time_scale=time_scale)
