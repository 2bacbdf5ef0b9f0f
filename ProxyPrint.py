import sys

from main_logic import main

if __name__ == "__main__":
    sys.exit(main())
