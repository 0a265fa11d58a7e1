import os


def get_secret(secret_name: str, default: str | None = None) -> str | None:
    """
    Read a docker secret from `/run/secrets/<name>`, falling back to the `<NAME>` environment variable.
    """
    lowercase_secret_name = secret_name.lower()
    uppercase_secret_name = secret_name.upper()

    secrets_path = f"/run/secrets/{lowercase_secret_name}"
    if os.path.exists(secrets_path):
        with open(secrets_path) as f:
            return f.read().strip()
    return os.environ.get(uppercase_secret_name, default)
