"""
Coach Assistant - Entry Point.

Single entry point: `python main.py` starts the Telegram bot and the
reminder tick.
"""

from coach.bot.telegram_bot import main

if __name__ == "__main__":
    main()
