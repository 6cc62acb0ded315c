import io
from typing import Optional

import numpy as np
import soundfile as sf

from bagfile.definitions import AudioRead


def generic_audio_read(
    audio_bytes: bytes,
    file_type: str,
    start_time: Optional[float] = None,
    end_time: Optional[float] = None,
    dtype: str = 'int16'
) -> AudioRead:
    """
    Decode an in-memory audio file.

    Args:
        audio_bytes: Complete audio file (e.g. a serialized .wav)
        file_type: Container format, used by soundfile to pick a decoder
        start_time: Optional start time in seconds
        end_time: Optional end time in seconds
        dtype: Sample type of the returned array

    Returns:
        AudioRead whose array has shape (frames, channels)
    """
    buffer = io.BytesIO(audio_bytes)
    buffer.name = f'temp.{file_type}'  # soundfile needs this to infer format

    with sf.SoundFile(buffer) as f:
        sample_rate = f.samplerate
        start_frame = 0 if start_time is None else int(start_time * sample_rate)
        end_frame = f.frames if end_time is None else min(f.frames, int(end_time * sample_rate))
        start_frame = min(max(start_frame, 0), f.frames)
        f.seek(start_frame)
        array = f.read(max(end_frame - start_frame, 0), dtype=dtype, always_2d=True)

    return AudioRead(
        file_type=file_type,
        modality='audio',
        sample_rate=sample_rate,
        array=np.ascontiguousarray(array)
    )
