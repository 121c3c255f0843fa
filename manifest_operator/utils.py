import functools
import hashlib
import json
import random


def mergeconcat(defaults, *overrides):
    """
    Returns a new dictionary obtained by deep-merging multiple sets of overrides
    into defaults, with precedence from right to left.
    """
    def mergeconcat2(defaults, overrides):
        if isinstance(defaults, dict) and isinstance(overrides, dict):
            merged = dict(defaults)
            for key, value in overrides.items():
                if key in defaults:
                    merged[key] = mergeconcat2(defaults[key], value)
                else:
                    merged[key] = value
            return merged
        elif isinstance(defaults, (list, tuple)) and isinstance(overrides, (list, tuple)):
            merged = list(defaults)
            merged.extend(overrides)
            return merged
        else:
            return overrides if overrides is not None else defaults
    return functools.reduce(mergeconcat2, overrides, defaults)


def compute_checksum(data):
    """
    Computes the checksum for the given data.
    """
    # When dumping, we sort the keys to try and ensure consistency
    if isinstance(data, bytes):
        return hashlib.sha256(data).hexdigest()
    if not isinstance(data, str):
        data = json.dumps(data, sort_keys = True, default = str)
    return hashlib.sha256(data.encode()).hexdigest()


def jitter(duration, fraction = 0.1):
    """
    Returns the duration randomised by up to the given fraction in either direction.
    """
    return duration * (1 + random.uniform(-fraction, fraction))


def split_api_version(api_version):
    """
    Splits an API version into a (group, version) tuple.
    """
    group, _, version = api_version.rpartition("/")
    return group, version


def join_api_version(group, version):
    """
    Joins a group and version into an API version.
    """
    return f"{group}/{version}" if group else version
