import logging
import os

from mutagen.id3 import ID3, ID3NoHeaderError, TIT2, TXXX

KARAOKE_TITLE_SUFFIX = " (Karaoke)"
VOCALS_TITLE_SUFFIX = " (Vocals)"


def tag_stems(karaoke_path, vocals_path, *, title=None, video_id=None):
    """Write ID3 title/source frames onto both output tracks.

    Best-effort: a tagging failure leaves the audio untouched and is only logged.
    Returns the paths that were tagged.
    """
    tagged = []
    for path, suffix in ((karaoke_path, KARAOKE_TITLE_SUFFIX), (vocals_path, VOCALS_TITLE_SUFFIX)):
        track_title = f"{title}{suffix}" if title else None
        try:
            if _apply_id3_tags(path, track_title, video_id):
                tagged.append(path)
        except Exception as exc:
            logging.warning("ID3 tagging skipped for %s: %s", os.path.basename(path), exc)
    return tagged


def read_tags(path):
    try:
        audio = ID3(path)
    except ID3NoHeaderError:
        return {}
    tags = {}
    title = audio.getall("TIT2")
    if title:
        tags["title"] = str(title[0].text[0])
    for frame in audio.getall("TXXX"):
        tags[frame.desc.lower()] = str(frame.text[0])
    return tags


def _apply_id3_tags(path, title, video_id):
    try:
        audio = ID3(path)
    except ID3NoHeaderError:
        audio = ID3()
    changed = False
    if title:
        audio.delall("TIT2")
        audio.add(TIT2(encoding=3, text=[title]))
        changed = True
    changed |= _set_id3_txxx(audio, "SOURCE", "YouTube")
    if video_id:
        changed |= _set_id3_txxx(audio, "VIDEO_ID", video_id)
    if changed:
        audio.save(path)
    return changed


def _set_id3_txxx(audio, desc, value):
    for frame in audio.getall("TXXX"):
        if frame.desc == desc and list(frame.text) == [value]:
            return False
    audio.delall(f"TXXX:{desc}")
    audio.add(TXXX(encoding=3, desc=desc, text=[str(value)]))
    return True
