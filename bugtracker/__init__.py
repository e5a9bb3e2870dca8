"""
BugTracker cog: turns ▶️ / ✅ chat messages into a tracked list of bugs.
"""


async def setup(bot):
    from .bugtracker import BugTracker

    await bot.add_cog(BugTracker(bot))
