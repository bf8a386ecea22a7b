"""RepoVerify: asynchronous repository verification pipeline."""

__version__ = "0.1.0"
