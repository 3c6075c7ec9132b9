import os
import tempfile

# The API tests import the app, which binds its engine at import time.
os.environ.setdefault(
    "DATABASE_URL", "sqlite:///" + os.path.join(tempfile.mkdtemp(), "championship-test.db")
)
