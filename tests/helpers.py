class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body
        self.text = "" if body is None else str(body)

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class FakeSession:
    """
    Stands in for requests.Session. `routes` maps a URL to a list of
    responses (or exceptions) handed out in order; the last one repeats.
    """

    def __init__(self, routes=None, default=None):
        self.routes = {url: list(replies) for url, replies in (routes or {}).items()}
        self.default = default if default is not None else FakeResponse(404)
        self.calls = []

    def _reply(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs.get("json")))
        replies = self.routes.get(url)
        if not replies:
            reply = self.default
        elif len(replies) > 1:
            reply = replies.pop(0)
        else:
            reply = replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def post(self, url, **kwargs):
        return self._reply("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._reply("GET", url, **kwargs)

    def urls(self, method="POST"):
        return [url for m, url, _ in self.calls if m == method]


BASE = "http://lab.test"
