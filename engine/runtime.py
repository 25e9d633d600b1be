import os
import shutil
import sys

from yt_dlp.version import __version__ as ytdlp_version


def get_runtime_info(settings=None):
    ffmpeg_bin = getattr(settings, "ffmpeg_bin", "ffmpeg")
    ffprobe_bin = getattr(settings, "ffprobe_bin", "ffprobe")
    return {
        "app_version": os.environ.get("VIDEOSPLITTER_VERSION", "0.0.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
        "ffmpeg_available": shutil.which(ffmpeg_bin) is not None,
        "ffprobe_available": shutil.which(ffprobe_bin) is not None,
    }
