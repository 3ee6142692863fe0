"""
Extract progress from raw trainer output.

Understands ai-toolkit (``step 123/2000 | loss: 0.12 | lr: 2e-4``), Kohya
(``steps: 123, loss: 0.12``), diffusers (``Step: 123``) and tqdm bars
(``103/200 [00:30<01:00, 3.21it/s, loss=0.12]`` or ``2.36s/it``).
Lines from model loading or downloads are dropped before step matching,
otherwise their progress bars look like training progress.
"""

import math
import re
from dataclasses import dataclass, field
from typing import List, Optional

STEP_TOTAL_PATTERNS = [
    re.compile(r"step\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE),
    re.compile(r"\|\s*(\d+)\s*/\s*(\d+)\s*\["),
    re.compile(r"^\s*(\d+)\s*/\s*(\d+)\s*\[", re.MULTILINE),
    re.compile(r"\b(\d+)\s*/\s*(\d+)\s*(?:steps?|iter)", re.IGNORECASE),
]
STEP_ONLY_PATTERNS = [
    re.compile(r"\b(?:steps?|iteration)[:\s]+(\d+)\b(?!\s*/)", re.IGNORECASE),
]

LOSS_PATTERN = re.compile(r"\b(?:train_|avg_|mean_)?loss[:\s=]+([0-9][0-9.eE+-]*)", re.IGNORECASE)
LR_PATTERN = re.compile(r"\b(?:lr|learning_rate)[:\s=]+([0-9][0-9.eE+-]*)", re.IGNORECASE)

ITS_PATTERN = re.compile(r"([0-9.]+)\s*it/s", re.IGNORECASE)
SPI_PATTERN = re.compile(r"([0-9.]+)\s*s/it", re.IGNORECASE)

CHECKPOINT_PATTERN = re.compile(r"saving\s+checkpoint|checkpoint\s+saved", re.IGNORECASE)

ERROR_PATTERNS = [
    re.compile(r"^.*\b(?:error|exception|traceback)\b.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"cuda\s+out\s+of\s+memory|out\s+of\s+memory", re.IGNORECASE),
    re.compile(r"(?:loss|gradient)\s+(?:is\s+)?nan", re.IGNORECASE),
]

NON_TRAINING_LINE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"loading\s+checkpoint\s+shards",
        r"downloading",
        r"fetching\s+\d+\s+files",
        r"loading\s+safetensors",
        r"loading\s+(?:t5|clip|vae|unet|text\s+encoder|transformer)",
        r"quantizing",
        r"tokenizer",
        r"resolving\s+data\s+files",
        r"^map:",
        r"generating\s+images",
    )
]


@dataclass
class ParsedProgress:
    last_step: Optional[int] = None
    total_steps: Optional[int] = None
    progress_percent: Optional[float] = None
    last_loss: Optional[float] = None
    last_learning_rate: Optional[float] = None
    steps_per_second: Optional[float] = None
    eta_seconds: Optional[int] = None
    checkpoints_saved: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def has_progress(self) -> bool:
        return self.last_step is not None


def _to_float(raw: str) -> Optional[float]:
    try:
        value = float(raw.rstrip(".,"))
    except ValueError:
        return None
    return value if math.isfinite(value) else None


class TrainingOutputParser:
    """Stateless parser; call ``parse`` on each log tail."""

    def parse(self, output: Optional[str]) -> ParsedProgress:
        result = ParsedProgress()
        if not output:
            return result

        training_text = "\n".join(
            line
            for line in output.splitlines()
            if not any(p.search(line) for p in NON_TRAINING_LINE_PATTERNS)
        )

        self._parse_steps(training_text, result)
        self._parse_speed(training_text, result)

        losses = [v for v in (_to_float(m) for m in LOSS_PATTERN.findall(output)) if v is not None]
        if losses:
            result.last_loss = losses[-1]
        rates = [v for v in (_to_float(m) for m in LR_PATTERN.findall(output)) if v is not None]
        if rates:
            result.last_learning_rate = rates[-1]

        result.checkpoints_saved = len(CHECKPOINT_PATTERN.findall(output))

        errors: List[str] = []
        for pattern in ERROR_PATTERNS:
            for match in pattern.finditer(output):
                message = match.group(0).strip()[:200]
                if message not in errors:
                    errors.append(message)
        result.errors = errors

        self._derive(result)
        return result

    def _parse_steps(self, text: str, result: ParsedProgress) -> None:
        max_step = None
        total = None
        for pattern in STEP_TOTAL_PATTERNS:
            for current, declared in pattern.findall(text):
                current, declared = int(current), int(declared)
                if declared == 0 or current > declared:
                    continue
                if max_step is None or current > max_step:
                    max_step = current
                if total is None or declared > total:
                    total = declared

        if max_step is None:
            for pattern in STEP_ONLY_PATTERNS:
                for current in pattern.findall(text):
                    if max_step is None or int(current) > max_step:
                        max_step = int(current)

        result.last_step = max_step
        result.total_steps = total

    def _parse_speed(self, text: str, result: ParsedProgress) -> None:
        # Whichever unit tqdm printed last wins; it flips between them
        last_pos = -1
        for pattern, invert in ((ITS_PATTERN, False), (SPI_PATTERN, True)):
            for match in pattern.finditer(text):
                value = _to_float(match.group(1))
                if not value or value <= 0 or match.start() < last_pos:
                    continue
                last_pos = match.start()
                result.steps_per_second = 1 / value if invert else value

    @staticmethod
    def _derive(result: ParsedProgress) -> None:
        if result.last_step is not None and result.total_steps:
            result.progress_percent = min(100.0, result.last_step / result.total_steps * 100)
            if result.steps_per_second:
                remaining = result.total_steps - result.last_step
                if remaining >= 0:
                    result.eta_seconds = round(remaining / result.steps_per_second)
