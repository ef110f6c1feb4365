from tablekit.models.user_preference import UserPreference  # noqa: F401
