"""patbroker -- a git credential helper that brokers Azure DevOps personal access tokens.

When git needs a credential for an Azure DevOps remote, patbroker checks the
stored token, logs in silently or through the browser when that token no
longer works, exchanges the resulting Azure access token for a scoped
personal access token, and stores it for next time.

Typical setup::

    git config --global credential.helper patbroker

Modules:
    app: Typer application and credential-helper entry point.
    authority: The authentication authority contract and its backends.
    broker: Validate / acquire / exchange decision procedure.
    models: Pydantic models shared across the entire package.
    config: XDG-aware directories and settings.
    store: File-backed token and session storage.
    git: Local git installation records.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
"""

__version__ = "0.1.0"
