"""procman 入口点。

支持: python -m procman
"""

from .app import main

if __name__ == "__main__":
    main()
