from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class FileDescriptor:
    """One reconciled source unit and the CAR slice that carries it.

    ``start_epoch`` and ``source_id`` are filled in by later pipeline stages
    (deal scheduling, external catalog rows); packaging leaves them ``None``.
    """

    id: str
    source_name: str
    source_path: str
    source_md5: str
    source_size: int
    car_name: str
    car_path: str
    car_md5: str
    car_url: str
    car_size: int
    payload_cid: str
    piece_cid: str
    start_epoch: Optional[int] = None
    source_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceName": self.source_name,
            "sourcePath": self.source_path,
            "sourceChecksum": self.source_md5,
            "sourceSize": self.source_size,
            "archiveName": self.car_name,
            "archivePath": self.car_path,
            "archiveChecksum": self.car_md5,
            "archiveUrl": self.car_url,
            "archiveSize": self.car_size,
            "payloadId": self.payload_cid,
            "pieceId": self.piece_cid,
            "scheduledEpoch": self.start_epoch,
            "sourceRef": self.source_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileDescriptor":
        return cls(
            id=data.get("id", ""),
            source_name=data.get("sourceName", ""),
            source_path=data.get("sourcePath", ""),
            source_md5=data.get("sourceChecksum", ""),
            source_size=int(data.get("sourceSize", 0)),
            car_name=data.get("archiveName", ""),
            car_path=data.get("archivePath", ""),
            car_md5=data.get("archiveChecksum", ""),
            car_url=data.get("archiveUrl", ""),
            car_size=int(data.get("archiveSize", 0)),
            payload_cid=data.get("payloadId", ""),
            piece_cid=data.get("pieceId", ""),
            start_epoch=data.get("scheduledEpoch"),
            source_id=data.get("sourceRef"),
        )

    def csv_row(self) -> List[str]:
        return [
            self.id,
            self.source_name,
            self.source_path,
            self.source_md5,
            str(self.source_size),
            self.car_name,
            self.car_path,
            self.car_md5,
            self.car_url,
            str(self.car_size),
            self.payload_cid,
            self.piece_cid,
            "" if self.start_epoch is None else str(self.start_epoch),
            "" if self.source_id is None else str(self.source_id),
            "",  # deals: filled in later by the deal pipeline
        ]
