"""testscope - run a test command and turn its output into a trustworthy result and report."""

__version__ = "0.1.0"
