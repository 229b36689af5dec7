"""Print a dead-letter queue summary: python -m backbone"""

from backbone.runner import main

if __name__ == "__main__":
    main()
