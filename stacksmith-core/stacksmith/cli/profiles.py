import argparse
import os
import sys
from typing import Optional

# important: this needs to be free of stacksmith imports


def set_profile_from_sys_argv():
    """
    Reads the --profile (or -p) flag from sys.argv and sets the 'CONFIG_PROFILE' os variable accordingly. This is
    later picked up by ``stacksmith.config``, which loads ``~/.stacksmith/<profile>.env`` for each listed profile.

    All ``--profile`` options are removed from sys.argv, so the profile can be given at any point on the command
    line. The last occurrence wins.
    """
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--profile")
    namespace, sys.argv = parser.parse_known_args(sys.argv)
    profile = namespace.profile

    if not profile:
        profile = parse_profile_argument(sys.argv)

    if profile:
        os.environ["CONFIG_PROFILE"] = profile.strip()


def parse_profile_argument(args) -> Optional[str]:
    """
    Lightweight arg parsing to find the first ``-p <config>`` or ``-p=<config>`` and return the value of
    ``<config>`` from the given arguments.

    :param args: list of CLI arguments
    :returns: the value of ``-p``.
    """
    for i, current_arg in enumerate(args):
        if current_arg.startswith("-p="):
            return current_arg[3:]
        if current_arg == "-p":
            try:
                return args[i + 1]
            except IndexError:
                return None

    return None
