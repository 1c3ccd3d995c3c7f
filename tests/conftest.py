import os

# point module-level engines at SQLite before anything under forum/ is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("AUTH_SERVICE_URL", "http://auth.test")
