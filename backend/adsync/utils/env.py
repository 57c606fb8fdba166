def require_env(name: str) -> str:
    """Return the value of a mandatory environment variable or raise RuntimeError.
    WHY: Fail-fast during startup when critical configuration is missing.
    """
    import os
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def load_env_file() -> None:
    """Load variables from a local .env file without overwriting exported ones.

    WHAT:
        Reads backend/.env (or the nearest .env) into os.environ.
    WHY:
        Local development uses a .env file; production exports variables and
        those must win.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    # True whenever a file was found, even if it set nothing new.
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
