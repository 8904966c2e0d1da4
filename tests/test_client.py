import json
from pathlib import Path
import tempfile
import unittest

import httpx

from circleci_cli.client import CircleCIClient, CircleCIError


class RecordingTransport:
    """Routes requests to a handler and keeps every request it saw."""

    def __init__(self, handler):
        self.requests = []
        self._handler = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)


def _client(handler, token="secret"):
    recorder = RecordingTransport(handler)
    client = CircleCIClient(token, "https://ci.example.com", transport=httpx.MockTransport(recorder))
    return client, recorder


class RequestTests(unittest.TestCase):
    def test_get_build_path_and_token(self):
        client, recorder = _client(lambda request: httpx.Response(200, json={"build_num": 42}))

        build = client.get_build("myorg", "myrepo", 42)

        self.assertEqual(build["build_num"], 42)
        request = recorder.requests[0]
        self.assertEqual(request.method, "GET")
        self.assertEqual(request.url.path, "/api/v1.1/project/github/myorg/myrepo/42")
        self.assertEqual(request.url.params["circle-token"], "secret")
        self.assertEqual(request.headers["accept"], "application/json")

    def test_no_token_sends_no_query(self):
        client, recorder = _client(lambda request: httpx.Response(200, json=[]), token=None)

        self.assertEqual(client.list_projects(), [])
        self.assertNotIn("circle-token", recorder.requests[0].url.params)

    def test_recent_builds_for_branch_and_filter(self):
        client, recorder = _client(lambda request: httpx.Response(200, json=[{"build_num": 1}]))

        builds = client.list_recent_builds_for_project("myorg", "myrepo", branch="master", status="failed", limit=5)

        self.assertEqual(builds, [{"build_num": 1}])
        request = recorder.requests[0]
        self.assertEqual(request.url.path, "/api/v1.1/project/github/myorg/myrepo/tree/master")
        self.assertEqual(request.url.params["filter"], "failed")
        self.assertEqual(request.url.params["limit"], "5")
        self.assertEqual(request.url.params["offset"], "0")

    def test_unlimited_listing_pages_until_short_page(self):
        def handler(request):
            offset = int(request.url.params["offset"])
            count = 100 if offset == 0 else 30
            return httpx.Response(200, json=[{"build_num": offset + i} for i in range(count)])

        client, recorder = _client(handler)

        builds = client.list_recent_builds(limit=-1)

        self.assertEqual(len(builds), 130)
        self.assertEqual([r.url.params["offset"] for r in recorder.requests], ["0", "100"])
        self.assertEqual(recorder.requests[0].url.path, "/api/v1.1/recent-builds")

    def test_limit_above_page_size(self):
        client, recorder = _client(lambda request: httpx.Response(
            200, json=[{}] * int(request.url.params["limit"])
        ))

        builds = client.list_recent_builds(limit=150, offset=10)

        self.assertEqual(len(builds), 150)
        self.assertEqual(
            [(r.url.params["limit"], r.url.params["offset"]) for r in recorder.requests],
            [("100", "10"), ("50", "110")],
        )

    def test_post_endpoints(self):
        client, recorder = _client(lambda request: httpx.Response(200, json={"build_num": 43}))

        client.retry_build("o", "r", 42)
        client.cancel_build("o", "r", 42)
        client.build("o", "r", "main")
        client.add_env_var("o", "r", "FOO", "bar")
        client.add_ssh_key("o", "r", "git.example.com", "KEY")

        paths = [(r.method, r.url.path) for r in recorder.requests]
        self.assertEqual(paths, [
            ("POST", "/api/v1.1/project/github/o/r/42/retry"),
            ("POST", "/api/v1.1/project/github/o/r/42/cancel"),
            ("POST", "/api/v1.1/project/github/o/r/tree/main"),
            ("POST", "/api/v1.1/project/github/o/r/envvar"),
            ("POST", "/api/v1.1/project/github/o/r/ssh-key"),
        ])
        self.assertEqual(json.loads(recorder.requests[3].content), {"name": "FOO", "value": "bar"})
        self.assertEqual(
            json.loads(recorder.requests[4].content),
            {"hostname": "git.example.com", "private_key": "KEY"},
        )

    def test_delete_endpoints(self):
        def handler(request):
            if request.url.path.endswith("build-cache"):
                return httpx.Response(200, json={"status": "build caches deleted"})
            return httpx.Response(200)

        client, recorder = _client(handler)

        self.assertEqual(client.clear_cache("o", "r"), "build caches deleted")
        client.delete_env_var("o", "r", "FOO")
        self.assertEqual(recorder.requests[1].method, "DELETE")
        self.assertEqual(recorder.requests[1].url.path, "/api/v1.1/project/github/o/r/envvar/FOO")

    def test_test_metadata_unwraps_tests(self):
        client, recorder = _client(lambda request: httpx.Response(200, json={"tests": [{"name": "t"}]}))

        self.assertEqual(client.list_test_metadata("o", "r", 3), [{"name": "t"}])
        self.assertEqual(recorder.requests[0].url.path, "/api/v1.1/project/github/o/r/3/tests")

    def test_action_output_skips_token(self):
        client, recorder = _client(lambda request: httpx.Response(200, json=[{"message": "hi"}]))

        outputs = client.get_action_outputs({"output_url": "https://output.example.com/step?sig=abc"})

        self.assertEqual(outputs, [{"message": "hi"}])
        request = recorder.requests[0]
        self.assertEqual(request.url.host, "output.example.com")
        self.assertEqual(dict(request.url.params), {"sig": "abc"})

    def test_get_project_scans_project_list(self):
        projects = [{"username": "a", "reponame": "b", "default_branch": "main"}]
        client, _ = _client(lambda request: httpx.Response(200, json=projects))

        self.assertEqual(client.get_project("a", "b")["default_branch"], "main")
        with self.assertRaises(CircleCIError) as caught:
            client.get_project("a", "missing")
        self.assertEqual(caught.exception.code, "NOT_FOUND")


class ErrorTests(unittest.TestCase):
    def test_http_error_uses_message_field(self):
        client, _ = _client(lambda request: httpx.Response(401, json={"message": "You must log in first."}))

        with self.assertRaises(CircleCIError) as caught:
            client.list_projects()

        err = caught.exception
        self.assertEqual(err.code, "HTTP")
        self.assertEqual(err.status_code, 401)
        self.assertEqual(str(err), "401: You must log in first.")

    def test_http_error_with_plain_body(self):
        client, _ = _client(lambda request: httpx.Response(500, text="upstream exploded"))

        with self.assertRaises(CircleCIError) as caught:
            client.list_projects()

        self.assertEqual(str(caught.exception), "500: upstream exploded")

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = _client(handler)

        with self.assertRaises(CircleCIError) as caught:
            client.list_projects()

        self.assertEqual(caught.exception.code, "NETWORK")
        self.assertEqual(caught.exception.status_code, 0)

    def test_invalid_json(self):
        client, _ = _client(lambda request: httpx.Response(200, text="<html>"))

        with self.assertRaises(CircleCIError) as caught:
            client.list_projects()

        self.assertEqual(caught.exception.code, "INVALID_RESPONSE")


class DownloadTests(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = Path(tmp.name)

    def test_writes_artifact_and_creates_directories(self):
        client, recorder = _client(lambda request: httpx.Response(200, content=b"<html>report</html>"))
        destination = self.tmp / "nested" / "dir" / "report.html"

        client.download("https://artifacts.example.com/0/report.html", destination)

        self.assertEqual(destination.read_bytes(), b"<html>report</html>")
        self.assertEqual(recorder.requests[0].url.params["circle-token"], "secret")

    def test_bad_status_leaves_no_file(self):
        client, _ = _client(lambda request: httpx.Response(404))
        destination = self.tmp / "missing.txt"

        with self.assertRaises(CircleCIError) as caught:
            client.download("https://artifacts.example.com/0/missing.txt", destination)

        self.assertEqual(caught.exception.code, "DOWNLOAD")
        self.assertEqual(str(caught.exception), "bad status: 404 Not Found")
        self.assertFalse(destination.exists())


if __name__ == "__main__":
    unittest.main()
