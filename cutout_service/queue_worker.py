"""
Batch worker.

Runs the express pipeline over local files, one at a time. Queue or storage
integration is left to the caller so this can be embedded into any worker
framework.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import InvalidInput
from .pipeline import remove_background_bytes
from .postprocessing import output_name

logger = logging.getLogger(__name__)


@dataclass
class BatchItem:
    input_path: Path
    output_dir: Path
    tolerance: Optional[float] = None
    feather: Optional[float] = None


def process_batch(items: Iterable[BatchItem]) -> List[Path]:
    """
    Process a batch of images synchronously.

    Returns the written PNG paths in input order.
    """
    outputs: List[Path] = []
    for item in items:
        input_path = Path(item.input_path)
        if not input_path.is_file():
            raise InvalidInput(f"Input file not found: {input_path}")
        logger.info(
            "Processing batch item path=%s tolerance=%s feather=%s",
            input_path,
            item.tolerance,
            item.feather,
        )
        png_bytes = remove_background_bytes(
            input_path.read_bytes(),
            tolerance=item.tolerance,
            feather=item.feather,
            filename=input_path.name,
        )
        output_dir = Path(item.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / output_name(input_path.name)
        output_path.write_bytes(png_bytes)
        outputs.append(output_path)
    return outputs
