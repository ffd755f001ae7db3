import sys

from pg_partialcopy.cli import main

if __name__ == "__main__":
    sys.exit(main())
