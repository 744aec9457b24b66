import io
import re
import unittest
from contextlib import redirect_stderr, redirect_stdout

import ntpquery
from ntpresponder import NTPresponder

STAMP = r"\d{2}-\d{2}-\d{4} \d{2}:\d{2}:\d{2}\.\d{6}"
REPORT_LINE = re.compile(rf"^{STAMP}(, {STAMP}){{3}}$")


def run_main(*argv):
    stderr = io.StringIO()
    with redirect_stderr(stderr):
        code = ntpquery.main(list(argv))
    return code, stderr.getvalue()


class TestSplitRemote(unittest.TestCase):
    def test_host_only(self):
        self.assertEqual(ntpquery.split_remote("pool.ntp.org", 123), ("pool.ntp.org", 123))

    def test_host_and_port(self):
        self.assertEqual(ntpquery.split_remote("127.0.0.1:1123", 123), ("127.0.0.1", 1123))

    def test_bad_port(self):
        with self.assertRaises(ValueError):
            ntpquery.split_remote("127.0.0.1:ntp", 123)


class TestMain(unittest.TestCase):
    def test_missing_remote(self):
        code, stderr = run_main()
        self.assertEqual(code, 1)
        self.assertIn("usage:", stderr)

    def test_invalid_port(self):
        for argv in (["host:abc"], ["-p", "0", "host"], ["host:70000"]):
            with self.subTest(argv=argv):
                code, stderr = run_main(*argv)
                self.assertEqual(code, 1)
                self.assertIn("usage:", stderr)

    def test_invalid_interval(self):
        code, _ = run_main("-i", "0", "127.0.0.1")
        self.assertEqual(code, 1)

    def test_unresolvable_host(self):
        code, stderr = run_main("no-such-host.invalid")
        self.assertEqual(code, 1)
        self.assertIn("usage:", stderr)

    def test_version(self):
        stdout = io.StringIO()
        with redirect_stdout(stdout), self.assertRaises(SystemExit) as ctx:
            ntpquery.main(["-V"])
        self.assertEqual(ctx.exception.code, 0)
        self.assertIn(ntpquery.__version__, stdout.getvalue())


class TestQuery(unittest.TestCase):
    def setUp(self):
        self.responder = NTPresponder(host="127.0.0.1", port=0)
        self.responder.start_background()
        self.addCleanup(self.responder.stop)

    def test_reports_replies(self):
        code, stderr = run_main("-c", "2", "-i", "0.05", "-t", "0.1", f"127.0.0.1:{self.responder.port}")
        self.assertEqual(code, 0)
        lines = [line for line in stderr.splitlines() if REPORT_LINE.match(line)]
        self.assertEqual(len(lines), 2)


if __name__ == "__main__":
    unittest.main()
