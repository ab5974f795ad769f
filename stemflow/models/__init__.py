from stemflow.models.base import Base
from stemflow.models.audio_asset import AudioAsset
from stemflow.models.stem_job import StemJob, StemJobSnapshot

__all__ = [
    "Base",
    "AudioAsset",
    "StemJob",
    "StemJobSnapshot",
]
