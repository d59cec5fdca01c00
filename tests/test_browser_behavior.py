import asyncio
import os
import sys
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import psutil

from livecast import browser
from livecast.browser import BrowserCaptureOptions, ChromeBrowserCapture, ensure_popout_url


class PopoutUrlTests(unittest.TestCase):
    def test_plain_url_gets_popout_flag(self):
        """Validate scenario: popout is appended as a query flag."""
        out = ensure_popout_url("http://127.0.0.1:2138/")
        self.assertTrue(out.startswith("http://127.0.0.1:2138/?"))
        self.assertIn("popout", out)

    def test_existing_query_and_hints(self):
        """Validate scenario: hints join the query, empty hints are dropped."""
        out = ensure_popout_url("http://h/view?a=1", {"theme": "dark", "avatar": 3, "destination": None})
        self.assertEqual(out, "http://h/view?a=1&popout=&theme=dark&avatar=3")

    def test_popout_not_duplicated(self):
        """Validate scenario: an existing popout flag is kept once."""
        out = ensure_popout_url("http://h/?popout=1")
        self.assertEqual(out.count("popout"), 1)

    def test_hash_routing(self):
        """Validate scenario: hash routes carry popout after the fragment."""
        out = ensure_popout_url("http://h/#/stream", {"theme": "neon"})
        self.assertEqual(out, "http://h/#/stream?popout&theme=neon")

    def test_relative_url(self):
        """Validate scenario: relative URLs fall back to string append."""
        self.assertEqual(ensure_popout_url("/stream"), "/stream?popout")
        self.assertEqual(ensure_popout_url("/stream?x=1"), "/stream?x=1&popout")


class ChromeCaptureTests(unittest.TestCase):
    def test_start_is_idempotent(self):
        """Validate scenario: start while active does nothing."""
        capture = ChromeBrowserCapture(chrome_bin="chrome", frame_file="/tmp/frame.png")
        capture._loop_task = MagicMock(done=MagicMock(return_value=False))
        with patch.object(capture, "_resolve_chrome") as resolve:
            asyncio.run(capture.start(BrowserCaptureOptions(url="http://127.0.0.1:2138")))
        resolve.assert_not_called()

    def test_missing_chrome_raises(self):
        """Validate scenario: an absent binary is reported."""
        capture = ChromeBrowserCapture(chrome_bin="/nonexistent/chrome")
        with patch("livecast.browser.shutil.which", return_value=None):
            with self.assertRaises(RuntimeError):
                asyncio.run(capture.start(BrowserCaptureOptions(url="http://127.0.0.1:2138")))

    def test_headless_loop_starts_and_stops(self):
        """Validate scenario: headless capture runs a cancellable loop."""
        capture = ChromeBrowserCapture(chrome_bin="chrome", frame_file="/tmp/frame.png")

        async def idle_loop(*args):
            await asyncio.sleep(60)

        async def scenario():
            with patch("livecast.browser.shutil.which", return_value="/usr/bin/chrome"), patch.object(
                capture, "_screenshot_loop", idle_loop
            ):
                await capture.start(BrowserCaptureOptions(url="http://127.0.0.1:2138", theme="dark"))
                await asyncio.sleep(0)
                self.assertTrue(capture.is_active())
                await capture.stop()
            self.assertFalse(capture.is_active())

        asyncio.run(scenario())

    def test_kiosk_window_is_killed_on_stop(self):
        """Validate scenario: on-screen capture kills the browser tree."""
        capture = ChromeBrowserCapture(chrome_bin="chrome")
        proc = MagicMock(pid=4321)
        proc.poll.return_value = None
        with patch("livecast.browser.shutil.which", return_value="/usr/bin/chrome"), patch(
            "livecast.browser.subprocess.Popen", return_value=proc
        ) as popen, patch.object(browser, "_kill_tree") as kill:
            asyncio.run(capture.start(BrowserCaptureOptions(url="http://127.0.0.1:2138", headless=False)))
            argv = popen.call_args.args[0]
            self.assertIn("--kiosk", argv)
            self.assertTrue(argv[-1].startswith("http://127.0.0.1:2138"))
            asyncio.run(capture.stop())
        kill.assert_called_once_with(4321)


@unittest.skipIf(sys.platform.startswith("win"), "needs a POSIX shell")
class ScreenshotCleanupTests(unittest.TestCase):
    def setUp(self):
        """Install a fake chrome that hangs instead of taking a screenshot."""
        self._tmp = tempfile.TemporaryDirectory()
        self.chrome = os.path.join(self._tmp.name, "chrome")
        with open(self.chrome, "w", encoding="utf-8") as f:
            f.write("#!/bin/sh\nexec sleep 30\n")
        os.chmod(self.chrome, 0o755)

    def tearDown(self):
        """Clean up resources created by each test case."""
        self._tmp.cleanup()

    @staticmethod
    def _sleepers():
        """Return live child processes running the fake chrome."""
        out = []
        for p in psutil.Process().children(recursive=True):
            try:
                if p.status() != psutil.STATUS_ZOMBIE and "sleep" in " ".join(p.cmdline()):
                    out.append(p.pid)
            except psutil.Error:
                pass
        return out

    def test_stop_kills_inflight_screenshot(self):
        """Validate scenario: stopping mid-screenshot leaves no browser behind."""
        capture = ChromeBrowserCapture(chrome_bin=self.chrome, frame_file=os.path.join(self._tmp.name, "frame.png"))

        async def scenario():
            """Start headless capture, let chrome hang, then stop."""
            await capture.start(BrowserCaptureOptions(url="http://127.0.0.1:2138"))
            await asyncio.sleep(0.5)
            self.assertTrue(self._sleepers())
            await capture.stop()

        asyncio.run(scenario())
        self.assertEqual(self._sleepers(), [])


if __name__ == "__main__":
    unittest.main()
