"""
Allow running as a module: python -m promtail_provision
"""
from promtail_provision.cli import main


if __name__ == '__main__':
    main()
