import os
import tempfile
import unittest

from karaoke.tagger import read_tags, tag_stems


class TagStemsTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.karaoke = os.path.join(self.tmpdir.name, "1_karaoke.mp3")
        self.vocals = os.path.join(self.tmpdir.name, "1_vocals.mp3")
        for path in (self.karaoke, self.vocals):
            with open(path, "wb") as handle:
                handle.write(b"\x00" * 64)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_titles_and_source_written(self):
        tagged = tag_stems(self.karaoke, self.vocals, title="Take On Me", video_id="djV11Xbc914")
        self.assertEqual(tagged, [self.karaoke, self.vocals])
        self.assertEqual(
            read_tags(self.karaoke),
            {"title": "Take On Me (Karaoke)", "source": "YouTube", "video_id": "djV11Xbc914"},
        )
        self.assertEqual(read_tags(self.vocals)["title"], "Take On Me (Vocals)")

    def test_retagging_is_stable(self):
        tag_stems(self.karaoke, self.vocals, video_id="djV11Xbc914")
        self.assertEqual(tag_stems(self.karaoke, self.vocals, video_id="djV11Xbc914"), [])
        self.assertNotIn("title", read_tags(self.karaoke))

    def test_missing_file_is_skipped(self):
        os.remove(self.vocals)
        tagged = tag_stems(self.karaoke, self.vocals, title="Song")
        self.assertEqual(tagged, [self.karaoke])


if __name__ == "__main__":
    unittest.main()
