"""FlowLint GitHub App: lints n8n workflow files in pull requests and reports via Check Runs."""

__version__ = "0.4.0"
