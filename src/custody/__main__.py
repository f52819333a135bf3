"""Command line entry point.

Usage:
    python -m custody derive --index 7
    python -m custody generate-key
    python -m custody encrypt-seed
    python -m custody config
    python -m custody run [--once scan|confirm|sweep|expire]
"""

import argparse
import asyncio
import json
import logging
import sys
from getpass import getpass

from custody.config import get_settings
from custody.crypto import encrypt_secret, generate_master_key
from custody.exceptions import ConfigurationError
from custody.hdwallet.service import KeyDerivationService

logger = logging.getLogger(__name__)


def cmd_derive(args: argparse.Namespace) -> int:
    """Print the deposit addresses derived at one index."""
    keys = KeyDerivationService()
    for info in keys.derive_all_addresses(args.index):
        print(f"{info.network.value:6} {info.derivation_path:22} {info.address}")
    return 0


def cmd_generate_key(args: argparse.Namespace) -> int:
    print(generate_master_key())
    return 0


def cmd_encrypt_seed(args: argparse.Namespace) -> int:
    """Encrypt a seed phrase with MASTER_KEY for WALLET_SEED_ENCRYPTED."""
    master_key = get_settings().master_key
    if not master_key:
        raise ConfigurationError("MASTER_KEY is not configured")

    seed = getpass("Seed phrase: ").strip()
    # Validates the mnemonic before anything is printed
    KeyDerivationService(seed_phrase=seed)
    print(encrypt_secret(seed, master_key))
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    print(json.dumps(get_settings().get_safe_dict(), indent=2))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    from custody.jobs.runner import main as run_jobs

    argv = ["--once", args.once] if args.once else []
    return asyncio.run(run_jobs(argv))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="custody", description="USDT deposit custody tools")
    subparsers = parser.add_subparsers(dest="command", required=True)

    derive = subparsers.add_parser("derive", help="Show addresses derived at an index")
    derive.add_argument("--index", type=int, required=True, help="HD derivation index")
    derive.set_defaults(func=cmd_derive)

    generate = subparsers.add_parser("generate-key", help="Generate a new MASTER_KEY")
    generate.set_defaults(func=cmd_generate_key)

    encrypt = subparsers.add_parser("encrypt-seed", help="Encrypt the seed phrase with MASTER_KEY")
    encrypt.set_defaults(func=cmd_encrypt_seed)

    config = subparsers.add_parser("config", help="Show configuration with secrets redacted")
    config.set_defaults(func=cmd_config)

    run = subparsers.add_parser("run", help="Run the deposit pipeline jobs")
    run.add_argument("--once", choices=("scan", "confirm", "sweep", "expire"))
    run.set_defaults(func=cmd_run)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return args.func(args)
    except (ConfigurationError, ValueError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
