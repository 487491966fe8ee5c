import asyncio
import os
import tempfile
import unittest
from unittest import mock

from karaoke.errors import (
    DownloadFailed,
    DurationExceeded,
    InvalidSourceURL,
    ProcessingFailed,
    SeparationFailed,
    SourceUnavailable,
)
from karaoke.orchestrator import FAILED_MESSAGE, STAGE_MESSAGES, JobStage, KaraokeOrchestrator
from karaoke.paths import build_karaoke_paths, ensure_karaoke_dirs
from karaoke.status import StatusChannel
from karaoke.store import KaraokeStore

from tests.fakes import FakeFetcher, FakeSeparator

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
NOW = 1700000000.0


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.paths = build_karaoke_paths(self.tmpdir.name)
        ensure_karaoke_dirs(self.paths)
        self.store = KaraokeStore(self.paths.db_path)
        self.channel = StatusChannel(queue_size=200)
        self.fetcher = FakeFetcher()
        self.separator = FakeSeparator()

    def tearDown(self):
        self.tmpdir.cleanup()

    def _orchestrator(self, **overrides):
        options = {
            "store": self.store,
            "fetcher": self.fetcher,
            "separator": self.separator,
            "channel": self.channel,
            "temp_dir": self.paths.temp_dir,
            "output_dir": self.paths.output_dir,
            "clock": lambda: NOW,
            "tag_outputs": False,
        }
        options.update(overrides)
        return KaraokeOrchestrator(**options)

    def _drain(self, subscription):
        events = []
        while True:
            try:
                events.append(subscription.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def _output_files(self):
        return sorted(os.listdir(self.paths.output_dir))


class ConversionFlowTests(OrchestratorTestCase):
    async def test_new_conversion(self):
        orchestrator = self._orchestrator()
        with self.channel.subscribe() as subscription:
            result = await orchestrator.process(URL)
            await asyncio.sleep(0)
            events = self._drain(subscription)

        self.assertEqual(
            result.to_response(),
            {"karaokeUrl": "/output/1700000000000_karaoke.mp3", "vocalsUrl": "/output/1700000000000_vocals.mp3"},
        )
        self.assertFalse(result.is_existing)
        record = self.store.find_by_video_id("dQw4w9WgXcQ")
        self.assertEqual(record.id, result.conversion_id)
        self.assertEqual(record.title, "Never Gonna Give You Up")
        self.assertEqual(record.duration, 212)
        self.assertEqual(self._output_files(), ["1700000000000_karaoke.mp3", "1700000000000_vocals.mp3"])
        self.assertFalse(os.path.exists(os.path.join(self.paths.temp_dir, "1700000000000.mp3")))

        messages = [event["message"] for event in events]
        self.assertEqual(
            messages[:3],
            ["Extracting video ID", "Checking for existing conversion", "Starting to check video information"],
        )
        self.assertIn({"message": "Video duration", "duration": "3 minutes 32 seconds"}, events)
        self.assertLess(messages.index("Starting to download YouTube video"), messages.index("YouTube video download completed"))
        self.assertLess(messages.index("YouTube video download completed"), messages.index("Saving conversion record"))
        self.assertEqual(events[-1], {"message": "Conversion completed", "progress": 100})

    async def test_download_progress_reaches_subscribers(self):
        orchestrator = self._orchestrator()
        with self.channel.subscribe() as subscription:
            await orchestrator.process(URL)
            await asyncio.sleep(0)
            events = self._drain(subscription)
        progress = [event["progress"] for event in events if event["message"] == "Downloading YouTube video"]
        self.assertEqual(progress, [50.0, 100.0])
        messages = [event["message"] for event in events]
        self.assertLess(messages.index("Downloading YouTube video"), messages.index("Saving conversion record"))

    async def test_repeat_request_returns_existing(self):
        orchestrator = self._orchestrator()
        first = await orchestrator.process(URL)
        with self.channel.subscribe() as subscription:
            second = await orchestrator.process("https://youtu.be/dQw4w9WgXcQ")
            events = self._drain(subscription)

        self.assertTrue(second.is_existing)
        self.assertEqual(second.to_response()["isExisting"], True)
        self.assertEqual(second.karaoke_url, first.karaoke_url)
        self.assertEqual(len(self.fetcher.probes), 1)
        self.assertEqual(len(self.separator.calls), 1)
        self.assertEqual(
            events,
            [
                {"message": "Extracting video ID"},
                {"message": "Checking for existing conversion"},
                {"message": "Found existing converted video"},
                {"message": "Conversion completed", "progress": 100},
            ],
        )

    async def test_every_stage_transition_publishes_in_order(self):
        orchestrator = self._orchestrator()
        stage_by_message = {message: stage for stage, message in STAGE_MESSAGES.items()}

        with self.channel.subscribe() as subscription:
            await orchestrator.process(URL)
            await orchestrator.process(URL)
            await asyncio.sleep(0)
            events = self._drain(subscription)

        stages = [stage_by_message[event["message"]] for event in events if event["message"] in stage_by_message]
        self.assertEqual(
            stages,
            [
                JobStage.EXTRACTING_ID,
                JobStage.CHECKING_DUPLICATE,
                JobStage.PROBING,
                JobStage.DOWNLOADING,
                JobStage.SEPARATING,
                JobStage.PERSISTING,
                JobStage.CLEANUP,
                JobStage.DONE,
                JobStage.EXTRACTING_ID,
                JobStage.CHECKING_DUPLICATE,
                JobStage.DUPLICATE_HIT,
                JobStage.DONE,
            ],
        )

    async def test_each_advance_publishes_one_event(self):
        orchestrator = self._orchestrator()
        published = []
        real_advance = orchestrator._advance

        def counting_advance(job, stage, **fields):
            with mock.patch.object(self.channel, "publish", wraps=self.channel.publish) as publish:
                real_advance(job, stage, **fields)
            published.append((stage, publish.call_count))

        with mock.patch.object(orchestrator, "_advance", side_effect=counting_advance):
            await orchestrator.process(URL)
            await orchestrator.process(URL)

        self.assertEqual(len(published), 12)
        self.assertEqual([count for _, count in published], [1] * len(published))

    async def test_concurrent_identical_requests_do_work_once(self):
        self.separator.delay = 0.2
        orchestrator = self._orchestrator()
        results = await asyncio.gather(orchestrator.process(URL), orchestrator.process(URL))

        self.assertEqual(len(self.fetcher.downloads), 1)
        self.assertEqual(len(self.separator.calls), 1)
        self.assertEqual(len(self.store.list_conversions()), 1)
        self.assertEqual(sorted(result.is_existing for result in results), [False, True])
        self.assertEqual(results[0].karaoke_url, results[1].karaoke_url)

    async def test_different_videos_get_distinct_files(self):
        orchestrator = self._orchestrator()
        first, second = await asyncio.gather(
            orchestrator.process(URL), orchestrator.process("https://youtu.be/9bZkp7q19f0")
        )
        self.assertNotEqual(first.karaoke_url, second.karaoke_url)
        self.assertEqual(len(self._output_files()), 4)
        self.assertEqual(len(self.store.list_conversions()), 2)

    async def test_lost_insert_race_is_reconciled(self):
        def competing_insert():
            self.store.insert_conversion(
                video_id="dQw4w9WgXcQ",
                title="Winner",
                duration=212,
                karaoke_path="/output/winner_karaoke.mp3",
                vocals_path="/output/winner_vocals.mp3",
            )

        self.separator.before_return = competing_insert
        orchestrator = self._orchestrator()
        result = await orchestrator.process(URL)

        self.assertTrue(result.is_existing)
        self.assertEqual(result.karaoke_url, "/output/winner_karaoke.mp3")
        self.assertEqual(len(self.store.list_conversions()), 1)
        self.assertEqual(self._output_files(), [])

    async def test_temp_cleanup_failure_is_not_fatal(self):
        real_remove = os.remove

        def flaky_remove(path):
            if path.startswith(self.paths.temp_dir):
                raise PermissionError("locked")
            return real_remove(path)

        orchestrator = self._orchestrator()
        with mock.patch("karaoke.orchestrator.os.remove", side_effect=flaky_remove):
            result = await orchestrator.process(URL)
        self.assertFalse(result.is_existing)
        self.assertIsNotNone(self.store.find_by_video_id("dQw4w9WgXcQ"))

    async def test_outputs_are_tagged_when_enabled(self):
        orchestrator = self._orchestrator(tag_outputs=True)
        with mock.patch("karaoke.orchestrator.tag_stems") as tag_stems:
            await orchestrator.process(URL)
        tag_stems.assert_called_once_with(
            os.path.join(self.paths.output_dir, "1700000000000_karaoke.mp3"),
            os.path.join(self.paths.output_dir, "1700000000000_vocals.mp3"),
            title="Never Gonna Give You Up",
            video_id="dQw4w9WgXcQ",
        )


class FailureTests(OrchestratorTestCase):
    async def test_invalid_url_does_no_work(self):
        orchestrator = self._orchestrator()
        with self.assertRaises(InvalidSourceURL):
            await orchestrator.process("https://vimeo.com/123")
        self.assertEqual(self.fetcher.probes, [])

    async def test_duration_ceiling(self):
        self.fetcher.duration = 601
        orchestrator = self._orchestrator()
        with self.assertRaises(DurationExceeded) as ctx:
            await orchestrator.process(URL)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self.fetcher.downloads, [])
        self.assertEqual(self.separator.calls, [])
        self.assertEqual(self.store.list_conversions(), [])

    async def test_failure_publishes_failed_event(self):
        self.fetcher.duration = 601
        orchestrator = self._orchestrator()
        with self.channel.subscribe() as subscription:
            with self.assertRaises(DurationExceeded):
                await orchestrator.process(URL)
            events = self._drain(subscription)
        self.assertEqual(
            events[-1],
            {
                "message": FAILED_MESSAGE,
                "error": "Video duration exceeds limit, please choose a video under 10 minutes",
            },
        )
        self.assertNotIn("Video duration", [event["message"] for event in events])

    async def test_duration_at_limit_is_allowed(self):
        self.fetcher.duration = 600
        result = await self._orchestrator().process(URL)
        self.assertFalse(result.is_existing)

    async def test_probe_failure_propagates(self):
        self.fetcher.probe_error = SourceUnavailable("Video unavailable")
        with self.assertRaises(SourceUnavailable):
            await self._orchestrator().process(URL)
        self.assertEqual(self.fetcher.downloads, [])

    async def test_download_failure_leaves_nothing_behind(self):
        self.fetcher.download_error = DownloadFailed("HTTP Error 403")
        with self.assertRaises(DownloadFailed):
            await self._orchestrator().process(URL)
        self.assertEqual(os.listdir(self.paths.temp_dir), [])
        self.assertEqual(self._output_files(), [])

    async def test_separation_failure_removes_partials(self):
        self.separator.error = SeparationFailed("Demucs processing failed, error code: 1")
        with self.assertRaises(SeparationFailed):
            await self._orchestrator().process(URL)
        self.assertEqual(self._output_files(), [])
        self.assertFalse(os.path.exists(os.path.join(self.paths.temp_dir, "1700000000000.mp3")))
        self.assertEqual(self.store.list_conversions(), [])

    async def test_unexpected_error_is_wrapped(self):
        self.fetcher.probe_error = RuntimeError("boom")
        with self.assertRaises(ProcessingFailed) as ctx:
            await self._orchestrator().process(URL)
        self.assertEqual(ctx.exception.details, "boom")

    async def test_failure_does_not_block_next_request(self):
        self.separator.error = SeparationFailed("first attempt")
        orchestrator = self._orchestrator()
        with self.assertRaises(SeparationFailed):
            await orchestrator.process(URL)
        self.assertFalse(orchestrator.busy)
        self.separator.error = None
        result = await orchestrator.process(URL)
        self.assertFalse(result.is_existing)


class DeleteMediaTests(OrchestratorTestCase):
    async def test_delete_media_removes_served_files(self):
        orchestrator = self._orchestrator()
        await orchestrator.process(URL)
        record = self.store.delete_conversion(self.store.find_by_video_id("dQw4w9WgXcQ").id)
        removed = orchestrator.delete_media(record)
        self.assertEqual(len(removed), 2)
        self.assertEqual(self._output_files(), [])
        self.assertEqual(orchestrator.delete_media(record), [])

if __name__ == "__main__":
    unittest.main()
