import sys
from src.sitesearch.cli import main

if __name__ == "__main__":
    sys.exit(main())
