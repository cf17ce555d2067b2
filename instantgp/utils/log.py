import datetime


def log(message):
    timestamp = datetime.datetime.now().strftime("[%Y-%m-%d %H:%M:%S]")
    print(f"{timestamp} {message}", flush=True)


def warn(message):
    log(f"WARNING: {message}")
