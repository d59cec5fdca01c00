import asyncio
import unittest
from unittest.mock import MagicMock, patch

from livecast import encoder
from livecast.encoder import FfmpegEncoderSupervisor, PipelineConfig, PipelineHealth, build_ffmpeg_cmd, clamp_volume
from livecast.errors import ConflictError


def _cfg(**kw):
    """Build a pipeline config with test credentials."""
    base = {"remote_url": "rtmp://live.example.com/app", "remote_key": "secret"}
    base.update(kw)
    return PipelineConfig(**base)


class PipelineConfigBehaviorTests(unittest.TestCase):
    def test_for_mode_populates_only_matching_field(self):
        """Validate scenario: mode-specific fields are mutually exclusive."""
        cfg = PipelineConfig.for_mode("x11grab", ":99", remote_url="rtmp://a/b", remote_key="k")
        self.assertEqual(cfg.display, ":99")
        self.assertIsNone(cfg.video_device)
        self.assertIsNone(cfg.frame_file)

        cfg = PipelineConfig.for_mode("pipe", "ignored", remote_url="rtmp://a/b", remote_key="k")
        self.assertIsNone(cfg.display)
        self.assertIsNone(cfg.video_device)
        self.assertIsNone(cfg.frame_file)

    def test_validate_rejects_foreign_mode_field(self):
        """Validate scenario: display set in file mode is rejected."""
        with self.assertRaises(ValueError):
            _cfg(input_mode="file", frame_file="/tmp/f.png", display=":1").validate()

    def test_validate_requires_mode_field(self):
        """Validate scenario: x11grab without display is rejected."""
        with self.assertRaises(ValueError):
            _cfg(input_mode="x11grab").validate()

    def test_validate_bounds(self):
        """Validate scenario: framerate and volume bounds."""
        with self.assertRaises(ValueError):
            _cfg(framerate=61).validate()
        with self.assertRaises(ValueError):
            _cfg(volume=101).validate()
        _cfg(framerate=60, volume=0).validate()

    def test_health_renders_camel_case(self):
        """Validate scenario: health dict uses wire names."""
        h = PipelineHealth(running=True, encoder_alive=True, uptime_seconds=3, frame_count=9, capture_mode="pipe")
        self.assertEqual(
            h.as_dict(),
            {
                "running": True,
                "encoderAlive": True,
                "uptime": 3,
                "frameCount": 9,
                "volume": 80,
                "muted": False,
                "audioSource": "silent",
                "inputMode": "pipe",
            },
        )


class FfmpegCommandBehaviorTests(unittest.TestCase):
    def test_volume_filter_uses_two_decimals(self):
        """Validate scenario: volume filter formatting and mute."""
        cmd = build_ffmpeg_cmd(_cfg(), volume=50, muted=False)
        self.assertIn("volume=0.50", cmd)
        cmd = build_ffmpeg_cmd(_cfg(), volume=50, muted=True)
        self.assertIn("volume=0.00", cmd)

    def test_target_is_url_slash_key(self):
        """Validate scenario: output target joins url and key."""
        cmd = build_ffmpeg_cmd(_cfg(remote_url="rtmp://live.example.com/app/"), volume=80, muted=False)
        self.assertEqual(cmd[-1], "rtmp://live.example.com/app/secret")
        self.assertEqual(cmd[-3:-1], ["-f", "flv"])

    def test_video_inputs_per_mode(self):
        """Validate scenario: each input mode selects its ffmpeg demuxer."""
        pipe = build_ffmpeg_cmd(_cfg(input_mode="pipe", framerate=15), volume=80, muted=False)
        self.assertIn("image2pipe", pipe)
        self.assertIn("pipe:0", pipe)

        grab = build_ffmpeg_cmd(_cfg(input_mode="x11grab", display=":99"), volume=80, muted=False)
        self.assertIn("x11grab", grab)
        self.assertEqual(grab[grab.index("x11grab") + 1:grab.index("x11grab") + 7],
                         ["-video_size", "1280x720", "-framerate", "30", "-i", ":99"])

        native = build_ffmpeg_cmd(_cfg(input_mode="avfoundation", video_device="3"), volume=80, muted=False)
        self.assertIn("3:none", native)

        relay = build_ffmpeg_cmd(_cfg(input_mode="file", frame_file="/tmp/frame.png"), volume=80, muted=False)
        self.assertIn("-loop", relay)
        self.assertIn("/tmp/frame.png", relay)

        test = build_ffmpeg_cmd(_cfg(input_mode="testsrc"), volume=80, muted=False)
        self.assertIn("testsrc=size=1280x720:rate=30", test)

    def test_audio_inputs_per_source(self):
        """Validate scenario: audio source picks the audio input."""
        silent = build_ffmpeg_cmd(_cfg(), volume=80, muted=False)
        self.assertTrue(any(a.startswith("anullsrc") for a in silent))

        pulse = build_ffmpeg_cmd(_cfg(audio_source="pulse", audio_device="mon"), volume=80, muted=False)
        self.assertEqual(pulse[pulse.index("pulse") - 1:pulse.index("pulse") + 3], ["-f", "pulse", "-i", "mon"])

        tts = build_ffmpeg_cmd(_cfg(audio_source="tts"), volume=80, muted=False, audio_fd=7)
        self.assertIn("pipe:7", tts)
        self.assertIn("24000", tts)

    def test_bitrate_sets_rate_control(self):
        """Validate scenario: bufsize is twice the bitrate."""
        cmd = build_ffmpeg_cmd(_cfg(bitrate="2500k"), volume=80, muted=False)
        self.assertEqual(cmd[cmd.index("-b:v") + 1], "2500k")
        self.assertEqual(cmd[cmd.index("-maxrate") + 1], "2500k")
        self.assertEqual(cmd[cmd.index("-bufsize") + 1], "5000k")

    def test_log_preview_masks_key(self):
        """Validate scenario: logged command hides the stream key."""
        preview = encoder._cmd_preview(build_ffmpeg_cmd(_cfg(), volume=80, muted=False))
        self.assertNotIn("secret", preview)
        self.assertTrue(preview.endswith("/***"))


class FfmpegSupervisorBehaviorTests(unittest.TestCase):
    def test_clamp_volume_rounds_and_bounds(self):
        """Validate scenario: volume clamps to 0..100 and rounds."""
        self.assertEqual(clamp_volume(73.7), 74)
        self.assertEqual(clamp_volume(0.4), 0)
        self.assertEqual(clamp_volume(-5), 0)
        self.assertEqual(clamp_volume(150), 100)

    def test_volume_and_mute_while_idle(self):
        """Validate scenario: idle supervisor tracks volume without spawning."""
        sup = FfmpegEncoderSupervisor()
        with patch.object(encoder.subprocess, "Popen") as popen:
            asyncio.run(sup.set_volume(73.7))
            self.assertEqual(sup.get_volume(), 74)
            asyncio.run(sup.mute())
            self.assertTrue(sup.is_muted())
            self.assertEqual(sup.get_volume(), 0)
            asyncio.run(sup.unmute())
            self.assertEqual(sup.get_volume(), 74)
        popen.assert_not_called()

    def test_write_frame_without_process_returns_false(self):
        """Validate scenario: frames are refused when not running."""
        sup = FfmpegEncoderSupervisor()
        self.assertFalse(sup.write_frame(b"\xff\xd8"))
        self.assertFalse(sup.is_running())

    def test_start_fails_clearly_without_ffmpeg(self):
        """Validate scenario: missing ffmpeg binary raises before spawn."""
        sup = FfmpegEncoderSupervisor(ffmpeg_bin="ffmpeg-missing")
        with patch.object(encoder.shutil, "which", return_value=None), \
                patch.object(encoder.subprocess, "Popen") as popen:
            with self.assertRaises(RuntimeError) as ctx:
                asyncio.run(sup.start(_cfg()))
        self.assertIn("not installed", str(ctx.exception))
        popen.assert_not_called()

    def test_start_reports_early_exit(self):
        """Validate scenario: ffmpeg dying during the startup window fails start."""
        proc = MagicMock()
        proc.poll.return_value = 1
        proc.returncode = 1
        proc.stderr = None
        proc.stdin = None
        sup = FfmpegEncoderSupervisor(startup_delay_s=0)
        with patch.object(encoder.shutil, "which", return_value="/usr/bin/ffmpeg"), \
                patch.object(encoder.subprocess, "Popen", return_value=proc):
            with self.assertRaises(RuntimeError) as ctx:
                asyncio.run(sup.start(_cfg()))
        self.assertIn("exited during startup", str(ctx.exception))
        self.assertFalse(sup.is_running())

    def test_start_then_stop_tracks_session(self):
        """Validate scenario: a healthy start runs until stop."""
        proc = MagicMock()
        proc.poll.return_value = None
        proc.stderr = None
        proc.pid = 4242
        sup = FfmpegEncoderSupervisor(startup_delay_s=0)

        async def scenario():
            await sup.start(_cfg(input_mode="pipe", framerate=15))
            self.assertTrue(sup.is_running())
            self.assertTrue(sup.write_frame(b"frame"))
            health = sup.health()
            self.assertEqual(health.frame_count, 1)
            self.assertEqual(health.capture_mode, "pipe")
            proc.poll.return_value = 0
            return await sup.stop()

        with patch.object(encoder.shutil, "which", return_value="/usr/bin/ffmpeg"), \
                patch.object(encoder.subprocess, "Popen", return_value=proc) as popen:
            result = asyncio.run(scenario())
        self.assertIn("uptime", result)
        self.assertFalse(sup.is_running())
        self.assertEqual(popen.call_args[1]["stdin"], encoder.subprocess.PIPE)
        proc.stdin.write.assert_called_once_with(b"frame")

    def test_unexpected_exit_clears_running(self):
        """Validate scenario: a crashed encoder is reported as not running."""
        proc = MagicMock()
        proc.poll.return_value = None
        proc.stderr = None
        sup = FfmpegEncoderSupervisor(startup_delay_s=0)
        with patch.object(encoder.shutil, "which", return_value="/usr/bin/ffmpeg"), \
                patch.object(encoder.subprocess, "Popen", return_value=proc):
            asyncio.run(sup.start(_cfg()))
        proc.poll.return_value = 1
        self.assertFalse(sup.is_running())
        self.assertFalse(sup.health().encoder_alive)

    def test_concurrent_start_conflicts(self):
        """Validate scenario: start while starting is rejected without spawning."""
        sup = FfmpegEncoderSupervisor()
        sup._starting = True
        with patch.object(encoder.subprocess, "Popen") as popen:
            with self.assertRaises(ConflictError) as ctx:
                asyncio.run(sup.start(_cfg()))
        self.assertEqual(ctx.exception.status, 429)
        popen.assert_not_called()
        self.assertTrue(sup._starting)


if __name__ == "__main__":
    unittest.main()
