"""Entry point for running as module: python -m creditsync"""

# Load .env file before importing anything else
from dotenv import load_dotenv
load_dotenv()

from creditsync.main import main

if __name__ == "__main__":
    main()
