"""Package data directories as OCI artifacts in a local OCI layout and track them as versioned volumes."""

__version__ = "0.1.0"