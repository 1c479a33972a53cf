# conftest.py
# Put the repository root on sys.path so the tests import the top-level
# packages (adaptive_scraper, core) and the utils module without installing.

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)

if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from adaptive_scraper.errors import PersistenceError  # noqa: E402
from adaptive_scraper.learning_store import LearningStore  # noqa: E402
from adaptive_scraper.models import ExtractionContext  # noqa: E402
from adaptive_scraper.page import HtmlPage  # noqa: E402
from adaptive_scraper.persistence import MemoryStore  # noqa: E402

NOW = 1_700_000_000.0
DAY = 24 * 60 * 60

ENTITY_URL = "https://www.example.com/company/acme"

ENTITY_HTML = """
<html>
<head>
  <title>Acme Corp | Example</title>
  <meta property="og:title" content="Acme Corp">
  <meta property="og:description" content="Acme Corp builds reliable rocket skates and anvils for discerning coyotes everywhere.">
  <meta property="og:image" content="https://cdn.example.com/acme/logo.png">
  <script>var tracking = "website https://tracker.example.net";</script>
</head>
<body>
  <header><nav><a href="/">Home</a> <a href="/jobs">Jobs</a></nav></header>
  <main>
    <h1 class="entity-title">Acme Corp</h1>
    <p class="entity-about" data-testid="about">Acme Corp builds reliable rocket skates and anvils for discerning
       coyotes everywhere. Founded in 1949, the company ships worldwide.</p>
    <img class="entity-logo" src="/static/acme-logo.png" alt="Acme logo" width="120">
    <a class="entity-site" itemprop="url" href="https://acme.example.org">Visit website</a>
    <div style="display: none"><span class="hidden-name">Hidden Corp</span></div>
  </main>
</body>
</html>
"""

LOGIN_WALL_HTML = """
<html>
<head><title>Sign in to continue</title></head>
<body>
  <h1>Sign in</h1>
  <form action="/login"><input type="text" name="user"><input type="password" name="pw"></form>
</body>
</html>
"""

OVERLAY_HTML = """
<html>
<body>
  <div role="dialog"><h2>Sign in to see more</h2><button>Not now</button></div>
  <div class="profile"><p>Acme Corp builds reliable rocket skates and anvils for discerning coyotes.</p></div>
</body>
</html>
"""

CHALLENGE_HTML = """
<html>
<body>
  <h1>Acme Corp</h1>
  <div class="g-recaptcha" data-sitekey="abc"></div>
</body>
</html>
"""

TRAP_HTML = """
<html>
<body>
  <h1 class="entity-title">Acme Corp</h1>
  <div class="bot-trap"><span class="brand">Buy cheap pills</span></div>
  <input type="text" name="website_hp" style="position: absolute; left: -9999px">
  <input type="hidden" name="csrf" value="token">
  <span class="brand-alt" aria-hidden="true">Ghost Corp</span>
  <div id="honeypot-note">Leave this field empty</div>
</body>
</html>
"""


class FrozenClock:
    """Clock returning a fixed time until advanced."""

    def __init__(self, start: float = NOW) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Sleep replacement recording requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FlakyStore(MemoryStore):
    """Memory store that raises PersistenceError while ``failing`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.failing = False

    def _check(self) -> None:
        if self.failing:
            raise PersistenceError("database is locked")

    def load(self, key):
        self._check()
        return super().load(key)

    def update(self, key, fn):
        self._check()
        return super().update(key, fn)

    def keys(self, prefix=""):
        self._check()
        return super().keys(prefix)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def store(clock):
    return LearningStore(MemoryStore(), clock=clock)


@pytest.fixture
def name_context():
    return ExtractionContext(site_template="example.com/company/*", field_type="name")


@pytest.fixture
def entity_page():
    return HtmlPage(ENTITY_HTML, url=ENTITY_URL)


@pytest.fixture
def login_wall_page():
    return HtmlPage(LOGIN_WALL_HTML, url=ENTITY_URL, loader=lambda url: LOGIN_WALL_HTML)
