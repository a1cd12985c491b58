from __future__ import annotations

import dataclasses
import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from PIL import Image

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
STATUS_SEGMENTED = "segmented"
STATUS_EDITED = "edited"


@dataclass(frozen=True)
class ImageRecord:
    id: int
    source: bytes
    name: Optional[str] = None
    segmented: Optional[Image.Image] = None
    edited: Optional[Image.Image] = None
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.edited is not None:
            return STATUS_EDITED
        if self.segmented is not None:
            return STATUS_SEGMENTED
        if self.error is not None:
            return STATUS_FAILED
        return STATUS_PENDING

    @property
    def output(self) -> Optional[Image.Image]:
        """The image a download should deliver: the edit if any, else the cutout."""
        return self.edited if self.edited is not None else self.segmented


class ImageCollectionStore:
    """
    Sole owner of every ``ImageRecord`` in a session.

    Records are keyed by id so completions arriving out of order land on the
    right image. Updates addressed to removed ids are dropped.
    """

    def __init__(self) -> None:
        self._records: "OrderedDict[int, ImageRecord]" = OrderedDict()
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, image_id: object) -> bool:
        return image_id in self._records

    def add(
        self, sources: Iterable[bytes], names: Optional[Sequence[Optional[str]]] = None
    ) -> List[int]:
        sources = list(sources)
        if names is None:
            names = [None] * len(sources)
        elif len(names) != len(sources):
            raise ValueError("names must match sources one to one")

        ids: List[int] = []
        for source, name in zip(sources, names):
            image_id = next(self._ids)
            self._records[image_id] = ImageRecord(id=image_id, source=bytes(source), name=name)
            ids.append(image_id)
        return ids

    def get(self, image_id: int) -> Optional[ImageRecord]:
        return self._records.get(image_id)

    def list(self) -> List[ImageRecord]:
        return list(self._records.values())

    def mark_segmented(self, image_id: int, image: Image.Image) -> bool:
        record = self._records.get(image_id)
        if record is None:
            logger.debug("Discarding segmentation for removed image %s", image_id)
            return False
        if record.segmented is not None:
            raise ValueError(f"Image {image_id} is already segmented")
        self._records[image_id] = dataclasses.replace(record, segmented=image, error=None)
        return True

    def mark_failed(self, image_id: int, message: str) -> bool:
        record = self._records.get(image_id)
        if record is None:
            return False
        self._records[image_id] = dataclasses.replace(record, error=message)
        return True

    def mark_edited(self, image_id: int, image: Image.Image) -> bool:
        record = self._records.get(image_id)
        if record is None:
            logger.debug("Discarding edit for removed image %s", image_id)
            return False
        if record.edited is not None and record.edited is not image:
            record.edited.close()
        self._records[image_id] = dataclasses.replace(record, edited=image)
        return True

    def remove(self, image_id: int) -> bool:
        record = self._records.pop(image_id, None)
        if record is None:
            return False
        for handle in (record.segmented, record.edited):
            if handle is not None:
                handle.close()
        return True

    def clear(self) -> None:
        for image_id in list(self._records):
            self.remove(image_id)

    def statuses(self) -> Dict[int, str]:
        return {image_id: record.status for image_id, record in self._records.items()}
