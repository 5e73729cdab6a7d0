#!/usr/bin/env python3

"""
macOS App Installer
Install or update a vendor-hosted macOS package (Zoom by default) on Intel and Apple Silicon Macs, only when the vendor has published something new.

----
MIT License

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
----

REQUIREMENTS:

    - macOS, run as root (the platform installer needs it)
    - Python v3.10 or later
    - Additional modules detailed in pyproject.toml (requests, packaging)

KNOWN ISSUES/DEFICIENCIES:

    - The first run on a machine that already has the app installed, but no meta file, will reinstall the app once to establish a baseline.
    - Only flat .pkg installers are supported. Disk images are not.

OVERVIEW:

The vendor URL is checked with a HEAD request and its Last-Modified header (or ETag) is compared with the value recorded
after the last successful install. When they match and the app is present, the run ends without touching anything.
Otherwise the installer waits for softwareupdate to finish, downloads the package, runs /usr/sbin/installer and only then
records the new value.

Functions:
- check_positive(value): Validates if the provided value is a positive integer.
- check_non_negative(value): Validates if the provided value is zero or a positive integer.
- logEvent(step, message, level, **fields): Emits a log record tagged with a run step and key/value fields.
- configureLogging(logDir, appName, debug): Sends logs to a file in the log directory and to stdout.
- endRun(exitCode, logLevel, message): Exits the script with a specified exit code, logging level, and final message.
- resolveArtifact(config, cpuBrand): Picks the artifact identity and download URL for this CPU.
- fetchFreshnessIndicator(session, url, timeout): Reads Last-Modified (or ETag) for a URL without downloading it.
- decideInstall(installedPresent, persisted, current): Compares indicators and decides what to do.
- waitForProcess(executor, processName, interval, timeout, cancelEvent): Waits for a conflicting process to exit.
- packageFileName(response, fallbackName): Works out a file name for a downloaded package.
- downloadArtifact(...): Downloads a package with bounded retries.
- cleanOldLogs(logDir, appName, retentionDays): Removes old log files written for appName.
- installSignalHandlers(cancelEvent): Turns SIGTERM/SIGINT into a cancellation request.
- describeVersionChange(before, after): Summarises the bundle version change of an install.
- run(argv): Main function to execute the script.

Usage:
- Run with no arguments to install or update Zoom, or pass --appname/--apppath/--intelurl/--armurl for another package.
- Every option can also be supplied as an environment variable, which is handy for MDM script payloads.
"""

import argparse
import enum
import fcntl
import getpass
import logging
import os
import plistlib
import re
import signal
import subprocess
import sys
import tempfile
import threading
import time
import requests
from contextlib import contextmanager
from dataclasses import dataclass
from packaging.version import InvalidVersion, Version
from pathlib import Path
from tempfile import NamedTemporaryFile
from urllib.parse import unquote, urlparse

## Version
scriptVersion = "1.0"

## Defaults
defaultAppName = "Zoom"
defaultAppPath = "/Applications/zoom.us.app"
defaultIntelURL = "https://zoom.us/client/latest/ZoomInstallerIT.pkg"
defaultArmURL = "https://zoom.us/client/latest/Zoom.pkg"
defaultMetaDir = "/Library/Logs/Microsoft/IntuneScripts/installZoom"
defaultWaitProcess = "/usr/sbin/softwareupdate"

installerBinary = "/usr/sbin/installer"
softwareUpdateBinary = "/usr/sbin/softwareupdate"
sysctlBinary = "/usr/sbin/sysctl"
pgrepBinary = "/usr/bin/pgrep"


###############################
#### Errors ####
###############################


class InstallerError(Exception):
    """Base class for every failure that should end a run with a nonzero exit code."""

    step = "main"

    def __init__(self, message, step=None):
        super().__init__(message)
        if step:
            self.step = step


class NetworkError(InstallerError):
    step = "network"


class StorageError(InstallerError):
    step = "state"


class InstallError(InstallerError):
    step = "install"


class PrerequisiteError(InstallerError):
    step = "prerequisites"


class ProcessWaitTimeout(InstallerError):
    step = "wait"


class RunCancelled(InstallerError):
    step = "cancel"


###############################
#### Data model ####
###############################


class InstallDecision(enum.Enum):
    UP_TO_DATE = "up to date"
    NEEDS_UPDATE = "needs update"
    NOT_INSTALLED = "not installed"


class InstallOutcome(enum.Enum):
    INSTALLED = "installed"
    ALREADY_UP_TO_DATE = "already up to date"
    DRY_RUN = "dry run"


@dataclass(frozen=True)
class ArtifactIdentity:
    name: str
    variant: str = "universal"

    @property
    def stateFileName(self):
        if self.variant == "universal":
            return f"{self.name}.meta"
        return f"{self.name}.{self.variant}.meta"


@dataclass(frozen=True)
class InstallerConfig:
    """
    Everything a run needs to know about the app being managed and how patient to be.

    Attributes:
        appName (str): Display name, also used for the meta and log file names.
        appPath (Path): Bundle path whose existence means the app is installed.
        intelURL (str): Package URL for Intel Macs. Set it equal to armURL for a universal package.
        armURL (str): Package URL for Apple Silicon Macs.
        metaDir (Path): Directory holding the per-artifact meta files.
        logDir (Path): Directory holding the run log. Defaults to metaDir.
        waitProcess (str): Process that must not be running during install. None disables the wait.
        waitInterval (int): Seconds between process checks.
        waitTimeout (int): Seconds to wait for waitProcess before giving up. None waits forever.
        timeout (int): Connect/read timeout for HTTP requests, in seconds.
        retries (int): Download attempts before giving up.
        retryDelay (int): Seconds between download attempts.
        logRetentionDays (int): Log files older than this are removed at the end of a run.
        checkRosetta (bool): Install Rosetta 2 on Apple Silicon before anything else.
        dryRun (bool): Report the decision without downloading, installing or recording anything.
        debug (bool): Verbose logging.
    """

    appName: str = defaultAppName
    appPath: Path = Path(defaultAppPath)
    intelURL: str = defaultIntelURL
    armURL: str = defaultArmURL
    metaDir: Path = Path(defaultMetaDir)
    logDir: Path = None
    waitProcess: str = defaultWaitProcess
    waitInterval: int = 30
    waitTimeout: int = 7200
    timeout: int = 30
    retries: int = 5
    retryDelay: int = 60
    logRetentionDays: int = 7
    checkRosetta: bool = True
    dryRun: bool = False
    debug: bool = False

    def __post_init__(self):
        ## Frozen dataclass, so normalise paths through object.__setattr__
        object.__setattr__(self, "appPath", Path(self.appPath))
        object.__setattr__(self, "metaDir", Path(self.metaDir))
        object.__setattr__(
            self, "logDir", Path(self.logDir) if self.logDir else self.metaDir
        )


###############################
#### Argument validation ####
###############################


## Validate integer inputs
def check_positive(value):
    """
    Check if the provided value is a positive integer.

    Args:
        value (str): The value to be checked, expected to be a string representation of an integer.

    Returns:
        int: The integer value if it is positive.

    Raises:
        argparse.ArgumentTypeError: If the value is not a positive integer.
    """
    try:
        ivalue = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("%s is an invalid positive int value" % value)
    if ivalue <= 0:
        raise argparse.ArgumentTypeError("%s is an invalid positive int value" % value)
    return ivalue


def check_non_negative(value):
    try:
        ivalue = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("%s is an invalid non-negative int value" % value)
    if ivalue < 0:
        raise argparse.ArgumentTypeError("%s is an invalid non-negative int value" % value)
    return ivalue


###############################
#### Logging ####
###############################


class StepFilter(logging.Filter):
    """Gives records that were not emitted through logEvent a step, so the format string never fails."""

    def filter(self, record):
        if not hasattr(record, "step"):
            record.step = "main" if record.name == "root" else record.name
        if not hasattr(record, "fields"):
            record.fields = {}
        return True


## Emit a log line tagged with the run step and any number of key/value fields
def logEvent(step, message, level="info", **fields):
    """
    Logs a structured event through the standard logging module.

    The step and fields are attached to the record as attributes (for handlers that want them) and
    rendered after the message as key=[value] pairs so the plain-text log still reads well.

    Args:
        step (str): Name of the run step, e.g. "detect", "metadata", "decide".
        message (str): Human readable message.
        level (str, optional): Logging level name. Defaults to "info".
        **fields: Values worth recording alongside the message.
    """
    if fields:
        message = f"{message} | " + " ".join(
            f"{key}=[{value}]" for key, value in fields.items()
        )
    logging.log(
        getattr(logging, level.upper(), logging.INFO),
        message,
        extra={"step": step, "fields": fields},
        stacklevel=2,
    )


## Log to a file and to stdout
def configureLogging(logDir, appName, debug=False):
    """
    Configures the root logger to write to <logDir>/<appName>.log (appending) and to stdout.

    Args:
        logDir (Path): Directory for the log file. Created if missing.
        appName (str): Used as the log file name.
        debug (bool, optional): Enable debug logging and the verbose format. Defaults to False.

    Returns:
        Path: The log file path.

    Raises:
        StorageError: If the log directory cannot be created.
    """
    logDir = Path(logDir)
    try:
        logDir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageError(f"Failed to create log directory {logDir}: {e}", step="log")

    logFile = logDir.joinpath(f"{appName}.log")

    ## Configure root logger
    logger = logging.getLogger()
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    ## Create handlers
    logToFile = logging.FileHandler(str(logFile))
    logToConsole = logging.StreamHandler(sys.stdout)

    ## Configure logging level and format
    logLevel = logging.DEBUG if debug else logging.INFO
    logFormat = logging.Formatter(
        "[%(asctime)s %(filename)s->%(funcName)s():%(lineno)s]%(levelname)s [%(step)s]: %(message)s"
        if debug
        else "%(asctime)s [%(levelname)s] [%(step)s] %(message)s"
    )

    logger.setLevel(logLevel)
    for handler in (logToFile, logToConsole):
        handler.setLevel(logLevel)
        handler.setFormatter(logFormat)
        handler.addFilter(StepFilter())
        logger.addHandler(handler)

    ## requests/urllib3 are chatty at debug level
    logging.getLogger("urllib3").setLevel(logging.DEBUG if debug else logging.WARNING)

    return logFile


## Exit with a specified exit code, logging level, and final message
def endRun(exitCode=None, logLevel="info", message=None):
    """
    Terminates the program with a specified exit code and logs a message.

    Args:
        exitCode (int, optional): The exit code to terminate the program with. Defaults to None.
        logLevel (str, optional): The logging level for the message. Defaults to "info".
        message (str, optional): The message to log. Defaults to None.

    Raises:
        SystemExit: Exits the program with the specified exit code.
    """
    logCmd = getattr(logging, logLevel, logging.info)
    if message:
        logCmd(message)
    sys.exit(exitCode)


###############################
#### Platform executor ####
###############################


class MacPlatformExecutor:
    """
    Wraps the macOS utilities the installer shells out to.

    Anything that touches the running system goes through here, so tests can hand ArtifactInstaller
    a fake with the same methods.
    """

    def cpuBrand(self):
        try:
            result = subprocess.run(
                [sysctlBinary, "-n", "machdep.cpu.brand_string"],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            logging.warning(f"Unable to read CPU brand string: {e}")
            return ""
        return result.stdout.strip()

    def isInstalled(self, appPath):
        return Path(appPath).is_dir()

    def isProcessRunning(self, processName):
        ## pgrep matches against the process name, which never contains the directory
        try:
            result = subprocess.run(
                [pgrepBinary, "-x", Path(processName).name],
                capture_output=True,
                check=False,
            )
        except OSError as e:
            raise InstallerError(
                f"Unable to check for process [{processName}]: {e}", step="process"
            )
        return result.returncode == 0

    def installRosetta(self):
        try:
            result = subprocess.run(
                [softwareUpdateBinary, "--install-rosetta", "--agree-to-license"],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            logging.error(f"Unable to run softwareupdate: {e}")
            return False
        logging.debug(result.stdout)
        return result.returncode == 0

    def runInstaller(self, pkgPath):
        """
        Runs the platform installer against a package.

        Args:
            pkgPath (Path): The package to install.

        Returns:
            int: The installer exit code.

        Raises:
            OSError: If the installer could not be started.
        """
        result = subprocess.run(
            [installerBinary, "-pkg", str(pkgPath), "-target", "/"],
            capture_output=True,
            text=True,
            check=False,
        )
        for line in (result.stdout + result.stderr).splitlines():
            logging.debug(f"installer: {line}")
        return result.returncode

    def bundleVersion(self, appPath):
        infoPlist = Path(appPath).joinpath("Contents", "Info.plist")
        try:
            with infoPlist.open("rb") as plistFile:
                return plistlib.load(plistFile).get("CFBundleShortVersionString")
        except (OSError, plistlib.InvalidFileException) as e:
            logging.debug(f"Unable to read bundle version from {infoPlist}: {e}")
            return None


###############################
#### State ####
###############################


class StateStore:
    """
    Keeps the last freshness indicator seen for each artifact in a plain-text meta file.

    Each file holds the indicator followed by a newline, the same layout `echo "$value" > file` produces.
    Writes go through a temporary file in the same directory and os.replace, so a reader only ever sees
    the old contents or the new ones.
    """

    def __init__(self, metaDir):
        self.metaDir = Path(metaDir)

    def pathFor(self, identity):
        return self.metaDir.joinpath(identity.stateFileName)

    def read(self, identity):
        """
        Returns the recorded indicator for an artifact.

        Args:
            identity (ArtifactIdentity): The artifact to look up.

        Returns:
            str or None: The indicator, or None if nothing has been recorded yet.

        Raises:
            StorageError: If the meta file exists but cannot be read.
        """
        metaFile = self.pathFor(identity)
        try:
            indicator = metaFile.read_text(encoding="utf-8")
        except FileNotFoundError:
            logging.debug(f"No meta file found at {metaFile}")
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"Unable to read meta file {metaFile}: {e}")
        return indicator.rstrip("\n")

    def write(self, identity, indicator):
        metaFile = self.pathFor(identity)
        tempPath = None
        try:
            self.metaDir.mkdir(parents=True, exist_ok=True)
            with NamedTemporaryFile(
                "w",
                dir=self.metaDir,
                prefix=f".{identity.stateFileName}.",
                suffix=".tmp",
                delete=False,
                encoding="utf-8",
            ) as tempFile:
                tempPath = Path(tempFile.name)
                tempFile.write(f"{indicator}\n")
                tempFile.flush()
                os.fsync(tempFile.fileno())
            os.replace(tempPath, metaFile)
        except OSError as e:
            if tempPath:
                tempPath.unlink(missing_ok=True)
            raise StorageError(f"Unable to write meta file {metaFile}: {e}")
        logging.debug(f"Wrote indicator [{indicator}] to {metaFile}")

    @contextmanager
    def lock(self, identity):
        """
        Holds an exclusive lock on the artifact's state for the duration of the block.

        Raises:
            StorageError: If the lock file cannot be opened or another run already holds the lock.
        """
        lockPath = self.metaDir.joinpath(f".{identity.stateFileName}.lock")
        try:
            self.metaDir.mkdir(parents=True, exist_ok=True)
            ## Append mode so an existing lock file is never truncated
            lockFile = open(lockPath, "a")
        except OSError as e:
            raise StorageError(f"Unable to open lock file {lockPath}: {e}")

        with lockFile:
            try:
                fcntl.flock(lockFile.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise StorageError(
                    f"Another run is already managing {identity.name} (lock held on {lockPath})"
                )
            try:
                yield
            finally:
                fcntl.flock(lockFile.fileno(), fcntl.LOCK_UN)


###############################
#### Core protocol ####
###############################


## Pick the identity and download URL for this CPU
def resolveArtifact(config, cpuBrand):
    """
    Selects the installer URL based on CPU type.

    Args:
        config (InstallerConfig): Run configuration.
        cpuBrand (str): Output of `sysctl -n machdep.cpu.brand_string`.

    Returns:
        tuple: (ArtifactIdentity, str) the identity and URL to use.
    """
    if config.intelURL == config.armURL:
        return ArtifactIdentity(config.appName, "universal"), config.intelURL

    if "Intel" in cpuBrand:
        return ArtifactIdentity(config.appName, "intel"), config.intelURL

    return ArtifactIdentity(config.appName, "arm64"), config.armURL


## Check the remote package for its freshness indicator without downloading it
def fetchFreshnessIndicator(session, url, timeout=30):
    """
    Sends a HEAD request (following redirects) and returns the Last-Modified header, or the ETag when
    the server does not send one.

    Args:
        session (requests.Session): Session to send the request with.
        url (str): The package URL.
        timeout (int, optional): Request timeout in seconds. Defaults to 30.

    Returns:
        str: The freshness indicator, exactly as the server sent it.

    Raises:
        NetworkError: On connection failures, timeouts, error statuses, or when neither header is present.
    """
    logEvent("metadata", "Checking if update is needed", url=url)
    try:
        response = session.head(url, allow_redirects=True, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise NetworkError(f"Failed to fetch metadata from {url}: {e}", step="metadata")

    if not response.ok:
        raise NetworkError(
            f"Metadata request to {url} returned status {response.status_code}",
            step="metadata",
        )

    if indicator := response.headers.get("Last-Modified"):
        return indicator

    if indicator := response.headers.get("ETag"):
        logging.debug("No Last-Modified header found, using ETag instead")
        return indicator

    raise NetworkError(
        f"Response from {response.url or url} has neither a Last-Modified nor an ETag header",
        step="metadata",
    )


def decideInstall(installedPresent, persisted, current):
    """
    Decides whether an install is needed.

    Comparison is exact string equality. Formatting drift upstream can only cause an extra install,
    never a skipped one.

    Args:
        installedPresent (bool): Whether the app bundle exists.
        persisted (str or None): Indicator recorded after the last install, None if there is none.
        current (str): Indicator just fetched from the server.

    Returns:
        InstallDecision: NOT_INSTALLED, NEEDS_UPDATE or UP_TO_DATE.
    """
    if not installedPresent:
        return InstallDecision.NOT_INSTALLED
    if persisted is None:
        return InstallDecision.NEEDS_UPDATE
    if persisted == current:
        return InstallDecision.UP_TO_DATE
    return InstallDecision.NEEDS_UPDATE


## Wait for a process (softwareupdate by default) to finish before installing
def waitForProcess(
    executor, processName, interval=30, timeout=None, cancelEvent=None, clock=time.monotonic
):
    """
    Blocks until the named process is no longer running.

    Args:
        executor (MacPlatformExecutor): Used to check for the process.
        processName (str): The process to wait for.
        interval (int, optional): Seconds between checks. Defaults to 30.
        timeout (int, optional): Give up after this many seconds. None waits forever.
        cancelEvent (threading.Event, optional): Setting it aborts the wait.
        clock (callable, optional): Monotonic clock, replaceable in tests.

    Raises:
        ProcessWaitTimeout: If the process is still running when the timeout expires.
        RunCancelled: If cancelEvent is set while waiting.
    """
    cancelEvent = cancelEvent or threading.Event()
    deadline = None if timeout is None else clock() + timeout

    logEvent("wait", f"Waiting for process [{processName}] to end...")

    while executor.isProcessRunning(processName):
        delay = interval
        if deadline is not None:
            remaining = deadline - clock()
            if remaining <= 0:
                raise ProcessWaitTimeout(
                    f"Process [{processName}] still running after {timeout} seconds, giving up"
                )
            delay = min(interval, remaining)

        logEvent(
            "wait", f"Process [{processName}] is running, waiting [{delay}] seconds"
        )
        if cancelEvent.wait(delay):
            raise RunCancelled(f"Cancelled while waiting for process [{processName}]")

    logEvent("wait", f"Process [{processName}] is not running, proceeding")


## Work out what to call a downloaded package
def packageFileName(response, fallbackName):
    """
    Names a download the way `curl -J -O` would: Content-Disposition first, then the last segment of the
    final URL, then the fallback.

    Args:
        response (requests.Response): The download response.
        fallbackName (str): Name to use when nothing better is available.

    Returns:
        str: A bare file name (no directories).
    """
    disposition = response.headers.get("Content-Disposition", "")
    if match := re.search(
        r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", disposition, re.IGNORECASE
    ):
        if name := _usableFileName(match.group(1).strip()):
            return name

    if name := _usableFileName(urlparse(response.url or "").path):
        return name

    return fallbackName


def _usableFileName(candidate):
    ## Path("..").name is "..", which would point outside the download directory
    name = Path(unquote(candidate)).name
    if name in ("", ".", ".."):
        return None
    return name


## Only these statuses are worth another attempt, matching curl --retry
def _isTransientStatus(statusCode):
    return statusCode in (408, 429) or statusCode >= 500


## Download a package into a directory, retrying on failure
def downloadArtifact(
    session,
    url,
    destDir,
    fallbackName,
    timeout=30,
    retries=5,
    retryDelay=60,
    cancelEvent=None,
):
    """
    Downloads the package at url into destDir.

    Args:
        session (requests.Session): Session to download with.
        url (str): The package URL.
        destDir (Path): Directory to save into.
        fallbackName (str): File name used when the server does not suggest one.
        timeout (int, optional): Connect/read timeout in seconds. Defaults to 30.
        retries (int, optional): Total attempts. Defaults to 5.
        retryDelay (int, optional): Seconds between attempts. Defaults to 60.
        cancelEvent (threading.Event, optional): Setting it aborts the download or the retry wait.

    Returns:
        Path: Path to the downloaded package.

    Raises:
        NetworkError: If every attempt fails, or on the first non-transient HTTP error status.
        StorageError: If the package cannot be written to disk.
        RunCancelled: If cancelEvent is set during the download or between attempts.
    """
    cancelEvent = cancelEvent or threading.Event()
    destDir = Path(destDir)
    lastError = None

    for i in range(1, retries + 1):
        logEvent(
            "download",
            f"Starting download (attempt {i} of {retries})",
            url=url,
        )
        pkgPath = None
        try:
            with session.get(
                url, stream=True, allow_redirects=True, timeout=timeout
            ) as response:
                response.raise_for_status()
                pkgPath = destDir.joinpath(packageFileName(response, fallbackName))
                with pkgPath.open("wb") as pkgFile:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        if cancelEvent.is_set():
                            raise RunCancelled("Cancelled during download")
                        if chunk:
                            pkgFile.write(chunk)

            if pkgPath.stat().st_size:
                logEvent(
                    "download",
                    "Successfully downloaded package",
                    path=pkgPath,
                    bytes=pkgPath.stat().st_size,
                )
                return pkgPath

            lastError = "downloaded file was empty"
            pkgPath.unlink(missing_ok=True)

        except requests.exceptions.HTTPError as e:
            statusCode = e.response.status_code if e.response is not None else 0
            if not _isTransientStatus(statusCode):
                raise NetworkError(
                    f"Download of {url} failed with status {statusCode}, not retrying",
                    step="download",
                )
            lastError = e

        except requests.exceptions.RequestException as e:
            lastError = e
            if pkgPath:
                pkgPath.unlink(missing_ok=True)

        except OSError as e:
            raise StorageError(
                f"Unable to save download to {destDir}: {e}", step="download"
            )

        logEvent(
            "download",
            f"Download attempt {i} of {retries} failed: {lastError}",
            level="warning",
        )
        if i < retries and cancelEvent.wait(retryDelay):
            raise RunCancelled("Cancelled while waiting to retry download")

    raise NetworkError(
        f"Failed to download {url} after {retries} attempts: {lastError}",
        step="download",
    )


## Clean up old logs
def cleanOldLogs(logDir, appName, retentionDays=7, now=None):
    """
    Removes this app's log files (<appName>.log and rotated copies) older than retentionDays.
    Nothing else in logDir is touched, since it may be shared with other tools.

    Args:
        logDir (Path): Directory to clean.
        appName (str): App whose logs are cleaned.
        retentionDays (int, optional): Age threshold in days. Defaults to 7.
        now (float, optional): Current epoch time, replaceable in tests.

    Returns:
        list: Paths that were removed.
    """
    logDir = Path(logDir)
    cutoff = (now if now is not None else time.time()) - retentionDays * 86400
    removed = []

    if not logDir.is_dir():
        return removed

    for path in logDir.iterdir():
        if not path.name.startswith(f"{appName}.log"):
            continue
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path)
        except OSError as e:
            logging.warning(f"Unable to remove old log {path}: {e}")

    logEvent(
        "cleanup", f"Cleaned up old logs in [{logDir}]", removed=len(removed)
    )
    return removed


def _parseBundleVersion(versionString):
    ## Zoom reports versions like "6.2.5 (41234)"
    if not versionString:
        return None
    if match := re.match(r"\d+(?:\.\d+)*", versionString.strip()):
        try:
            return Version(match.group(0))
        except InvalidVersion:
            return None
    return None


def describeVersionChange(before, after):
    """
    Describes what an install did to the bundle version.

    Args:
        before (str or None): CFBundleShortVersionString before the install.
        after (str or None): CFBundleShortVersionString after the install.

    Returns:
        str: A short description for the run summary.
    """
    beforeVersion = _parseBundleVersion(before)
    afterVersion = _parseBundleVersion(after)

    if afterVersion is None:
        return "unknown"
    if before is None:
        return f"installed {after}"
    if beforeVersion is None:
        return f"{before} -> {after}"
    if afterVersion > beforeVersion:
        return f"upgraded {before} -> {after}"
    if afterVersion == beforeVersion:
        return f"reinstalled {after}"
    return f"downgraded {before} -> {after}"


class ArtifactInstaller:
    """
    Runs the check-and-install protocol for one app.

    1. Make sure Rosetta 2 is present on Apple Silicon (optional).
    2. Pick the package URL for this CPU.
    3. Check whether the app is installed.
    4. Fetch the package's freshness indicator.
    5. Under the state lock, read the recorded indicator and decide.
    6. If the app is up to date, stop.
    7. Otherwise wait for softwareupdate, download, install, and record the new indicator.

    The recorded indicator is only written after the installer succeeds. Any failure before that leaves
    the meta file exactly as it was.

    What happened is kept on the instance (identity, url, installedPresent, currentIndicator,
    persistedIndicator, decision, versionBefore, versionAfter) so the caller can report it.
    """

    def __init__(self, config, executor, session=None, cancelEvent=None):
        self.config = config
        self.executor = executor
        self.session = session or requests.Session()
        self.cancelEvent = cancelEvent or threading.Event()
        self.stateStore = StateStore(config.metaDir)

        self.identity = None
        self.url = None
        self.installedPresent = None
        self.currentIndicator = None
        self.persistedIndicator = None
        self.decision = None
        self.versionBefore = None
        self.versionAfter = None

    def ensurePrerequisites(self):
        """
        Installs Rosetta 2 if needed on Apple Silicon.

        Raises:
            PrerequisiteError: If Rosetta 2 is missing and could not be installed.
        """
        logEvent("prerequisites", "Checking if we need Rosetta 2")
        if "Intel" in self.executor.cpuBrand():
            logEvent("prerequisites", "Intel processor detected, no need for Rosetta 2")
            return

        ## oahd only runs when Rosetta is installed
        if self.executor.isProcessRunning("oahd"):
            logEvent("prerequisites", "Rosetta 2 already installed")
            return

        if self.config.dryRun:
            logEvent("prerequisites", "DRY RUN: Rosetta 2 would be installed")
            return

        logEvent("prerequisites", "Installing Rosetta 2")
        if not self.executor.installRosetta():
            raise PrerequisiteError("Failed to install Rosetta 2")
        logEvent("prerequisites", "Rosetta 2 installed")

    def checkCancelled(self, before):
        if self.cancelEvent.is_set():
            raise RunCancelled(f"Cancelled before {before}")

    def installPackage(self, pkgPath):
        logEvent(
            "install", f"Installing [{self.config.appName}]", package=pkgPath
        )
        try:
            exitCode = self.executor.runInstaller(pkgPath)
        except OSError as e:
            raise InstallError(f"Unable to run the installer for {pkgPath}: {e}")

        if exitCode != 0:
            raise InstallError(
                f"Installation of [{self.config.appName}] failed with exit code {exitCode}"
            )
        logEvent("install", f"[{self.config.appName}] installed successfully")

    def run(self):
        """
        Executes one check-and-install run.

        Returns:
            InstallOutcome: INSTALLED, ALREADY_UP_TO_DATE or DRY_RUN.

        Raises:
            PrerequisiteError, NetworkError, StorageError, InstallError, ProcessWaitTimeout, RunCancelled
        """
        config = self.config

        if config.checkRosetta:
            self.ensurePrerequisites()

        self.identity, self.url = resolveArtifact(config, self.executor.cpuBrand())
        logEvent(
            "select",
            f"Selected {config.appName} URL",
            url=self.url,
            variant=self.identity.variant,
        )

        self.installedPresent = self.executor.isInstalled(config.appPath)
        if self.installedPresent:
            self.versionBefore = self.executor.bundleVersion(config.appPath)
            logEvent(
                "detect",
                f"[{config.appName}] is already installed, checking for updates...",
                path=config.appPath,
                version=self.versionBefore,
            )
        else:
            logEvent(
                "detect",
                f"[{config.appName}] is not installed, proceeding with installation",
                path=config.appPath,
            )

        self.currentIndicator = fetchFreshnessIndicator(
            self.session, self.url, timeout=config.timeout
        )
        logEvent("metadata", "Fetched freshness indicator", current=self.currentIndicator)

        with self.stateStore.lock(self.identity):
            self.persistedIndicator = self.stateStore.read(self.identity)
            self.decision = decideInstall(
                self.installedPresent, self.persistedIndicator, self.currentIndicator
            )
            logEvent(
                "decide",
                f"Decision: {self.decision.value}",
                installed=self.installedPresent,
                persisted=self.persistedIndicator,
                current=self.currentIndicator,
            )

            if self.decision == InstallDecision.UP_TO_DATE:
                logEvent("decide", f"No update needed. {config.appName} is up to date.")
                return InstallOutcome.ALREADY_UP_TO_DATE

            if self.persistedIndicator is None and self.installedPresent:
                logEvent(
                    "decide",
                    "No meta file found, reinstalling to establish a baseline",
                    level="warning",
                )

            if config.dryRun:
                logEvent(
                    "decide",
                    f"DRY RUN: would download and install {config.appName}",
                    url=self.url,
                )
                return InstallOutcome.DRY_RUN

            self.checkCancelled("waiting for other installs")
            if config.waitProcess:
                waitForProcess(
                    self.executor,
                    config.waitProcess,
                    interval=config.waitInterval,
                    timeout=config.waitTimeout,
                    cancelEvent=self.cancelEvent,
                )

            self.checkCancelled("download")
            ## The package is discarded with the directory whether or not the install works
            with tempfile.TemporaryDirectory(prefix=f"{config.appName}-") as tempDir:
                pkgPath = downloadArtifact(
                    self.session,
                    self.url,
                    tempDir,
                    f"{config.appName}.pkg",
                    timeout=config.timeout,
                    retries=config.retries,
                    retryDelay=config.retryDelay,
                    cancelEvent=self.cancelEvent,
                )
                self.checkCancelled("running the installer")
                self.installPackage(pkgPath)

            ## A run cancelled while the installer was busy is not recorded, so the next run installs again
            self.checkCancelled("recording the new indicator")
            self.stateStore.write(self.identity, self.currentIndicator)
            logEvent(
                "state",
                "Recorded new freshness indicator",
                path=self.stateStore.pathFor(self.identity),
                indicator=self.currentIndicator,
            )

        self.versionAfter = self.executor.bundleVersion(config.appPath)
        return InstallOutcome.INSTALLED


###############################
#### Command line ####
###############################


def buildParser():
    parser = argparse.ArgumentParser(
        description="Install or update a macOS package only when the vendor publishes a new one.",
        formatter_class=argparse.RawTextHelpFormatter,
        argument_default=argparse.SUPPRESS,
    )

    parser.add_argument(
        "--appname",
        nargs="?",
        help=f"Name of the app, used for meta and log file names (default: {defaultAppName})",
    )

    parser.add_argument(
        "--apppath",
        nargs="?",
        metavar="Path",
        help=f"Path to the installed app bundle (default: {defaultAppPath})",
    )

    parser.add_argument(
        "--intelurl",
        nargs="?",
        metavar="URL",
        help="Package URL for Intel Macs. Set both URLs to the same value for a universal package.",
    )

    parser.add_argument(
        "--armurl",
        nargs="?",
        metavar="URL",
        help="Package URL for Apple Silicon Macs",
    )

    parser.add_argument(
        "--metadir",
        nargs="?",
        metavar="Path",
        help=f"Directory for meta files (default: {defaultMetaDir})",
    )

    parser.add_argument(
        "--logdir",
        nargs="?",
        metavar="Path",
        help="Directory for the log file (default: same as --metadir)",
    )

    parser.add_argument(
        "--waitprocess",
        nargs="?",
        metavar="Process name",
        help=f'Wait for this process to exit before installing (default: {defaultWaitProcess}). Pass "" to skip waiting.',
    )

    parser.add_argument(
        "--waitinterval",
        default=30,
        type=check_positive,
        metavar="Seconds",
        help="Seconds between checks for --waitprocess",
    )

    parser.add_argument(
        "--waittimeout",
        default=7200,
        type=check_non_negative,
        metavar="Seconds",
        help="Give up waiting for --waitprocess after this many seconds. 0 waits forever.",
    )

    parser.add_argument(
        "--timeout",
        default=30,
        type=check_positive,
        metavar="Seconds",
        help="Connection timeout for HTTP requests",
    )

    parser.add_argument(
        "--retries",
        default=5,
        type=check_positive,
        metavar="Attempts",
        help="Download attempts before giving up",
    )

    parser.add_argument(
        "--retrydelay",
        default=60,
        type=check_non_negative,
        metavar="Seconds",
        help="Seconds between download attempts",
    )

    parser.add_argument(
        "--logretention",
        default=7,
        type=check_positive,
        metavar="Days",
        help="Remove log files older than this many days",
    )

    parser.add_argument(
        "--skiprosetta",
        action="store_true",
        help="Do not check for or install Rosetta 2 on Apple Silicon",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging for this script",
    )

    parser.add_argument(
        "--dryrun",
        action="store_true",
        help="Report whether an install is needed without downloading, installing or recording anything",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"{scriptVersion}",
        help="Show script version and exit",
    )

    return parser


## Build a config from parsed arguments, falling back to environment variables, then defaults
def configFromArgs(args, environ=None):
    environ = os.environ if environ is None else environ

    appName = args.appname if "appname" in args else environ.get("appName", defaultAppName)
    appPath = args.apppath if "apppath" in args else environ.get("appPath", defaultAppPath)
    intelURL = (
        args.intelurl if "intelurl" in args else environ.get("intelURL", defaultIntelURL)
    )
    armURL = args.armurl if "armurl" in args else environ.get("armURL", defaultArmURL)
    metaDir = args.metadir if "metadir" in args else environ.get("metaDir", defaultMetaDir)
    logDir = args.logdir if "logdir" in args else environ.get("logDir", None)
    waitProcess = (
        args.waitprocess
        if "waitprocess" in args
        else environ.get("waitProcess", defaultWaitProcess)
    )

    return InstallerConfig(
        appName=appName,
        appPath=appPath,
        intelURL=intelURL,
        armURL=armURL,
        metaDir=metaDir,
        logDir=logDir,
        waitProcess=waitProcess or None,
        waitInterval=args.waitinterval,
        waitTimeout=args.waittimeout or None,
        timeout=args.timeout,
        retries=args.retries,
        retryDelay=args.retrydelay,
        logRetentionDays=args.logretention,
        checkRosetta=not args.skiprosetta if "skiprosetta" in args else True,
        dryRun=args.dryrun if "dryrun" in args else False,
        debug=args.debug if "debug" in args else False,
    )


def buildRunSummary(config, installer, outcome, runStarted, logFile, error=None):
    runSummary = f"""
#######################################
#### App Install/Update Summary ####
#######################################

## Run Started: {runStarted}

## Configured Options:
- App: {config.appName}
- App Path: {config.appPath}
- Package URL: {installer.url}
- Meta File: {installer.stateStore.pathFor(installer.identity) if installer.identity else "n/a"}
- Dry Run: {config.dryRun}

## Run Results:
- Installed at start: {installer.installedPresent}
- Current indicator: {installer.currentIndicator}
- Recorded indicator: {installer.persistedIndicator}
- Decision: {installer.decision.value if installer.decision else "n/a"}
- Outcome: {outcome.value if outcome else "FAILED"}
"""

    if outcome == InstallOutcome.INSTALLED:
        runSummary = (
            runSummary
            + f"- Version: {describeVersionChange(installer.versionBefore, installer.versionAfter)}\n"
        )

    if error:
        runSummary = runSummary + f"- Error ({error.step}): {error}\n"

    runSummary = (
        runSummary
        + f"""
## Run Finished: {time.strftime("%Y-%m-%d %H:%M:%S")}

## Full log available at {logFile}
"""
    )
    return runSummary


## Ask the run to stop at its next safe point. The installer is never interrupted mid-install.
def installSignalHandlers(cancelEvent):
    def handleSignal(signum, frame):
        logging.warning(
            f"Received {signal.Signals(signum).name}, stopping at the next safe point"
        )
        cancelEvent.set()

    signal.signal(signal.SIGTERM, handleSignal)
    signal.signal(signal.SIGINT, handleSignal)


## Do the things
def run(argv=None):
    """
    Executes the installer from the command line.

    Parses arguments, configures logging, runs ArtifactInstaller and exits 0 on success (installed, up to
    date, or dry run) or 1 on any InstallerError.
    """
    args = buildParser().parse_args(argv)
    config = configFromArgs(args)

    try:
        logFile = configureLogging(config.logDir, config.appName, config.debug)
    except StorageError as e:
        endRun(1, "critical", f"{e}, exiting")

    runStarted = time.strftime("%Y-%m-%d %H:%M:%S")
    logEvent("main", f"Starting {Path(sys.argv[0]).name} v{scriptVersion}")
    logEvent("main", f"Running as user: {getpass.getuser()}")

    cancelEvent = threading.Event()
    installSignalHandlers(cancelEvent)

    installer = ArtifactInstaller(config, MacPlatformExecutor(), cancelEvent=cancelEvent)
    outcome = None
    error = None

    try:
        outcome = installer.run()
    except InstallerError as e:
        error = e
        logEvent(e.step, f"{e}", level="critical")

    if not config.dryRun:
        cleanOldLogs(config.logDir, config.appName, config.logRetentionDays)

    runSummary = buildRunSummary(config, installer, outcome, runStarted, logFile, error)

    if error:
        endRun(1, "error", runSummary)

    endRun(0, message=runSummary)


if __name__ == "__main__":
    run()
