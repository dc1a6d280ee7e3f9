"""Job scheduling: calling window, retry ladder, rate guard and the scheduler."""
