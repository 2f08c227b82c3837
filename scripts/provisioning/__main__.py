"""Allow `python -m scripts.provisioning`."""

from scripts.provisioning.cli import main

if __name__ == "__main__":
    main()
