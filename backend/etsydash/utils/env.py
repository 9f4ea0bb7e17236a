def load_env_file() -> None:
    """Load environment variables from a local .env file without overwriting.

    WHAT:
        Populates os.environ from backend/.env when present.
    WHY:
        Modules that read configuration at import time (security, database)
        need the dev .env even when settings were not exported in the shell.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    loaded = load_dotenv(override=False)
    if loaded:
        logger.info("[ENV] Loaded local .env file (existing variables kept)")
    else:
        logger.debug("[ENV] No local .env file found")
