"""Run the gateway wrapper."""

from gatewrap.__main__ import main

if __name__ == "__main__":
    main()
