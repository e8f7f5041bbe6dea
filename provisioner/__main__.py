"""Allow ``python -m provisioner``; the redeploy script relies on it."""

from provisioner.main import app

if __name__ == "__main__":
    app()
