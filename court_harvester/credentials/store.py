"""
Credential file loader.
One .env-style file per credential, read in lexicographic order.
"""

from pathlib import Path
from typing import Iterable, List, Optional

from dotenv import dotenv_values

from court_harvester.config import RotationSettings, get_config
from court_harvester.errors import CredentialError
from court_harvester.logging_config import get_logger
from court_harvester.models import Credential

logger = get_logger("credentials.store")


def load_credentials(
    keys_dir: Optional[str] = None,
    skip: Optional[Iterable[str]] = None,
    settings: Optional[RotationSettings] = None
) -> List[Credential]:
    """
    Load the credential pool from a directory of key files.

    Args:
        keys_dir: Directory holding one file per credential
        skip: File names reserved out of rotation
        settings: Rotation settings (variable names, pattern, default budget)

    Returns:
        Credentials in lexicographic file-name order

    Raises:
        CredentialError: directory missing or no usable key file
    """
    settings = settings or get_config().rotation
    directory = Path(keys_dir or settings.keys_dir)
    skipped = set(skip if skip is not None else settings.skip_files)

    if not directory.is_dir():
        raise CredentialError(f"Keys directory not found: {directory}")

    files = sorted(
        (p for p in directory.glob(settings.key_pattern) if p.is_file() and p.name not in skipped),
        key=lambda p: p.name
    )
    if not files:
        raise CredentialError(f"No key files in {directory}")

    credentials = []
    for path in files:
        values = dotenv_values(path)
        api_key = (values.get(settings.api_key_var) or "").strip()
        if not api_key:
            logger.warning(f"Key file has no {settings.api_key_var}, skipping", extra={"credential": path.name})
            continue

        secret_key = (values.get(settings.secret_key_var) or "").strip()
        budget = settings.budget_per_key
        raw_budget = values.get(settings.budget_var)
        if raw_budget:
            try:
                budget = int(raw_budget)
            except ValueError as e:
                raise CredentialError(f"{path.name}: {settings.budget_var} must be an integer") from e
            if budget <= 0:
                raise CredentialError(f"{path.name}: {settings.budget_var} must be positive")

        credentials.append(Credential(
            name=path.name,
            api_key=api_key,
            secret_key=secret_key,
            budget=budget,
        ))

    if not credentials:
        raise CredentialError(f"No valid keys found in {directory}")

    total = sum(c.budget for c in credentials)
    logger.info(
        f"Loaded {len(credentials)} keys ({', '.join(c.name for c in credentials)}), "
        f"total capacity ~{total} requests"
    )
    return credentials
