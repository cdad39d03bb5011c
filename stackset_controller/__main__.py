import sys

from stackset_controller.cli import main

if __name__ == "__main__":
    sys.exit(main())
