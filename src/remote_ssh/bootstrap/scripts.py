"""
Install script generation

The generated scripts install (if needed) and start the remote server, then
print a result block between "<id>: start" and "<id>: end" markers. Errors
are reported through the same block with a non-zero exitCode, preceded by a
line starting with "Error".
"""

import re
import uuid
from typing import Dict, Optional

from remote_ssh.models import InstallOptions

LISTENING_ON_PATTERN = "Extension host agent listening on"
LOG_POLL_ATTEMPTS = 5
LOG_POLL_INTERVAL = 0.5

# Fixed flag contract for starting the server
SERVER_START_FLAGS = "--start-server --host=127.0.0.1"
SERVER_TRAILING_FLAGS = "--telemetry-level off --enable-remote-auto-shutdown --accept-server-license-terms"

RESULT_KEYS = ("exitCode", "listeningOn", "connectionToken", "logFile",
               "osReleaseId", "arch", "platform", "tmpDir")

ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
EXTENSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-@]*$")


def validate_options(options: InstallOptions) -> None:
    """Reject values that would break out of the generated script"""
    for name in options.env_variables:
        if not ENV_NAME_RE.match(name):
            raise ValueError(f"Invalid environment variable name: {name!r}")
    for extension_id in options.extension_ids:
        if not EXTENSION_ID_RE.match(extension_id):
            raise ValueError(f"Invalid extension id: {extension_id!r}")
    for label, value in (("quality", options.quality), ("version", options.version),
                         ("commit", options.commit), ("release", options.release or ""),
                         ("server application name", options.server_application_name),
                         ("server data folder name", options.server_data_folder_name),
                         ("download URL template", options.server_download_url_template)):
        if any(c in value for c in "\"'`\n\r"):
            raise ValueError(f"Invalid character in {label}: {value!r}")


def render_download_url(template: str, options: InstallOptions, os_name: Optional[str] = None,
                        arch: Optional[str] = None) -> str:
    """
    Substitute the download URL placeholders.

    ${os} and ${arch} are left in place when not given so the remote script
    can fill them in after detecting the platform.
    """
    values: Dict[str, Optional[str]] = {
        "quality": options.quality,
        "version": options.version,
        "commit": options.commit,
        "release": options.release or "",
        "os": os_name,
        "arch": arch,
    }
    url = template
    for key, value in values.items():
        if value is not None:
            url = url.replace("${" + key + "}", value)
    return url


def _extension_flags(options: InstallOptions) -> str:
    return " ".join(f"--install-extension {extension_id}" for extension_id in options.extension_ids)


def _listen_flag(options: InstallOptions) -> str:
    if options.use_socket_path:
        return f"--socket-path=$TMP_DIR/vscode-server-sock-{uuid.uuid4()}"
    return "--port=0"


def generate_bash_script(options: InstallOptions) -> str:
    """Generate the POSIX install script"""
    validate_options(options)

    # ${os} and ${arch} are resolved by the script itself
    download_url = render_download_url(options.server_download_url_template, options).replace("${", "\\${")
    env_lines = "\n    ".join(f'echo "{name}==${name}=="' for name in options.env_variables)
    connection_token = uuid.uuid4()

    return f"""
# Server installation script

TMP_DIR="${{XDG_RUNTIME_DIR:-"/tmp"}}"

DISTRO_VERSION="{options.version}"
DISTRO_COMMIT="{options.commit}"
DISTRO_QUALITY="{options.quality}"
DISTRO_VSCODIUM_RELEASE="{options.release or ''}"

SERVER_APP_NAME="{options.server_application_name}"
SERVER_INITIAL_EXTENSIONS="{_extension_flags(options)}"
SERVER_LISTEN_FLAG="{_listen_flag(options)}"
SERVER_DATA_DIR="$HOME/{options.server_data_folder_name}"
SERVER_DIR="$SERVER_DATA_DIR/bin/$DISTRO_COMMIT"
SERVER_SCRIPT="$SERVER_DIR/bin/$SERVER_APP_NAME"
SERVER_LOGFILE="$SERVER_DATA_DIR/.$DISTRO_COMMIT.log"
SERVER_PIDFILE="$SERVER_DATA_DIR/.$DISTRO_COMMIT.pid"
SERVER_TOKENFILE="$SERVER_DATA_DIR/.$DISTRO_COMMIT.token"
SERVER_ARCH=
SERVER_CONNECTION_TOKEN=
SERVER_DOWNLOAD_URL=

LISTENING_ON=
OS_RELEASE_ID=
ARCH=
PLATFORM=

print_install_results_and_exit() {{
    echo "{options.id}: start"
    echo "exitCode==$1=="
    echo "listeningOn==$LISTENING_ON=="
    echo "connectionToken==$SERVER_CONNECTION_TOKEN=="
    echo "logFile==$SERVER_LOGFILE=="
    echo "osReleaseId==$OS_RELEASE_ID=="
    echo "arch==$ARCH=="
    echo "platform==$PLATFORM=="
    echo "tmpDir==$TMP_DIR=="
    {env_lines}
    echo "{options.id}: end"
    exit 0
}}

# Check if platform is supported
KERNEL="$(uname -s)"
case $KERNEL in
    Darwin)
        PLATFORM="darwin"
        ;;
    Linux)
        PLATFORM="linux"
        ;;
    FreeBSD)
        PLATFORM="freebsd"
        ;;
    DragonFly)
        PLATFORM="dragonfly"
        ;;
    AIX)
        PLATFORM="aix"
        ;;
    *)
        echo "Error platform not supported: $KERNEL"
        print_install_results_and_exit 1
        ;;
esac

# Check machine architecture
ARCH="$(uname -m)"
case $ARCH in
    x86_64 | amd64)
        SERVER_ARCH="x64"
        ;;
    armv7l | armv8l)
        SERVER_ARCH="armhf"
        ;;
    arm64 | aarch64)
        SERVER_ARCH="arm64"
        ;;
    ppc64le)
        SERVER_ARCH="ppc64le"
        ;;
    ppc64 | powerpc64)
        SERVER_ARCH="ppc64"
        ;;
    riscv64)
        SERVER_ARCH="riscv64"
        ;;
    loongarch64)
        SERVER_ARCH="loong64"
        ;;
    s390x)
        SERVER_ARCH="s390x"
        ;;
    *)
        # uname -m prints a machine id on AIX, ask for the processor type instead
        if [[ $PLATFORM == "aix" ]]; then
            AIX_ARCH="$(uname -p 2>/dev/null)"
            case $AIX_ARCH in
                powerpc)
                    SERVER_ARCH="ppc64"
                    ARCH="ppc64"
                    ;;
                *)
                    echo "Error AIX architecture not supported: $AIX_ARCH"
                    print_install_results_and_exit 1
                    ;;
            esac
        else
            echo "Error architecture not supported: $ARCH"
            print_install_results_and_exit 1
        fi
        ;;
esac

if [[ $PLATFORM == "aix" ]]; then
    export PATH="/opt/freeware/bin:$PATH"
fi

# Detect OS release
if [[ $PLATFORM == "aix" ]]; then
    OS_RELEASE_ID="aix"
else
    OS_RELEASE_ID="$(grep -i '^ID=' /etc/os-release 2>/dev/null | sed 's/^[Ii][Dd]=//' | sed 's/"//g')"
    if [[ -z $OS_RELEASE_ID ]]; then
        OS_RELEASE_ID="$(grep -i '^ID=' /usr/lib/os-release 2>/dev/null | sed 's/^[Ii][Dd]=//' | sed 's/"//g')"
        if [[ -z $OS_RELEASE_ID ]]; then
            OS_RELEASE_ID="unknown"
        fi
    fi
fi

# Create installation folder
if [[ ! -d $SERVER_DIR ]]; then
    mkdir -p $SERVER_DIR
    if (( $? > 0 )); then
        echo "Error creating server install directory"
        print_install_results_and_exit 1
    fi
fi

# Alpine has its own server build
if [[ $OS_RELEASE_ID = alpine ]]; then
    PLATFORM=$OS_RELEASE_ID
fi

# AIX runs the linux-x64 build
if [[ $PLATFORM == "aix" ]]; then
    DOWNLOAD_OS="linux"
    DOWNLOAD_ARCH="x64"
else
    DOWNLOAD_OS="$PLATFORM"
    DOWNLOAD_ARCH="$SERVER_ARCH"
fi
SERVER_DOWNLOAD_URL="$(echo "{download_url}" | sed "s/\\${{os}}/$DOWNLOAD_OS/g" | sed "s/\\${{arch}}/$DOWNLOAD_ARCH/g")"

# Check if server script is already installed
if [[ ! -f $SERVER_SCRIPT ]]; then
    case "$PLATFORM" in
        darwin | linux | alpine | aix )
            ;;
        *)
            echo "Error platform not supported: '$PLATFORM' needs manual installation of remote extension host"
            print_install_results_and_exit 1
            ;;
    esac

    pushd $SERVER_DIR > /dev/null

    if [[ ! -z $(which wget) ]]; then
        wget --tries=3 --timeout=10 --continue --no-verbose -O vscode-server.tar.gz $SERVER_DOWNLOAD_URL
    elif [[ ! -z $(which curl) ]]; then
        curl --retry 3 --connect-timeout 10 --location --show-error --silent --output vscode-server.tar.gz $SERVER_DOWNLOAD_URL
    else
        echo "Error no tool to download server binary"
        print_install_results_and_exit 1
    fi

    if (( $? > 0 )); then
        echo "Error downloading server from $SERVER_DOWNLOAD_URL"
        print_install_results_and_exit 1
    fi

    tar -xf vscode-server.tar.gz --strip-components 1
    if (( $? > 0 )); then
        echo "Error while extracting server contents"
        print_install_results_and_exit 1
    fi

    if [[ ! -f $SERVER_SCRIPT ]]; then
        echo "Error server contents are corrupted"
        print_install_results_and_exit 1
    fi

    rm -f vscode-server.tar.gz

    popd > /dev/null
else
    echo "Server script already installed in $SERVER_SCRIPT"
fi

# Try to find if server is already running
if [[ -f $SERVER_PIDFILE ]]; then
    SERVER_PID="$(cat $SERVER_PIDFILE)"
    SERVER_RUNNING_PROCESS="$(ps -o pid,args -p $SERVER_PID | grep $SERVER_SCRIPT)"
else
    SERVER_RUNNING_PROCESS="$(ps -o pid,args -A | grep $SERVER_SCRIPT | grep -v grep)"
fi

if [[ -z $SERVER_RUNNING_PROCESS ]]; then
    if [[ -f $SERVER_LOGFILE ]]; then
        rm $SERVER_LOGFILE
    fi
    if [[ -f $SERVER_TOKENFILE ]]; then
        rm $SERVER_TOKENFILE
    fi
    if [[ -f $SERVER_PIDFILE ]]; then
        rm $SERVER_PIDFILE
    fi

    touch $SERVER_TOKENFILE
    chmod 600 $SERVER_TOKENFILE
    SERVER_CONNECTION_TOKEN="{connection_token}"
    echo $SERVER_CONNECTION_TOKEN > $SERVER_TOKENFILE

    $SERVER_SCRIPT {SERVER_START_FLAGS} $SERVER_LISTEN_FLAG $SERVER_INITIAL_EXTENSIONS --connection-token-file $SERVER_TOKENFILE {SERVER_TRAILING_FLAGS} &> $SERVER_LOGFILE &
    echo $! > $SERVER_PIDFILE
else
    echo "Server script is already running $SERVER_SCRIPT"
fi

if [[ -f $SERVER_TOKENFILE ]]; then
    SERVER_CONNECTION_TOKEN="$(cat $SERVER_TOKENFILE)"
else
    echo "Error server token file not found $SERVER_TOKENFILE"
    print_install_results_and_exit 1
fi

if [[ -f $SERVER_LOGFILE ]]; then
    for i in {{1..{LOG_POLL_ATTEMPTS}}}; do
        LISTENING_ON="$(cat $SERVER_LOGFILE | grep -E '{LISTENING_ON_PATTERN} .+' | sed 's/{LISTENING_ON_PATTERN} //')"
        if [[ -n $LISTENING_ON ]]; then
            break
        fi
        sleep {LOG_POLL_INTERVAL}
    done

    if [[ -z $LISTENING_ON ]]; then
        echo "Error server did not start successfully"
        print_install_results_and_exit 1
    fi
else
    echo "Error server log file not found $SERVER_LOGFILE"
    print_install_results_and_exit 1
fi

# Finish server setup
print_install_results_and_exit 0
"""


def generate_powershell_script(options: InstallOptions) -> str:
    """Generate the Windows PowerShell install script"""
    validate_options(options)

    download_url = render_download_url(options.server_download_url_template, options,
                                       os_name="win32", arch="x64")
    env_lines = "\n    ".join(f'"{name}==$env:{name}=="' for name in options.env_variables)
    connection_token = uuid.uuid4()
    poll_ms = int(LOG_POLL_INTERVAL * 1000)

    return f"""
# Server installation script

$TMP_DIR="$env:TEMP\\$([System.IO.Path]::GetRandomFileName())"
$ProgressPreference = "SilentlyContinue"

$DISTRO_VERSION="{options.version}"
$DISTRO_COMMIT="{options.commit}"
$DISTRO_QUALITY="{options.quality}"
$DISTRO_VSCODIUM_RELEASE="{options.release or ''}"

$SERVER_APP_NAME="{options.server_application_name}"
$SERVER_INITIAL_EXTENSIONS="{_extension_flags(options)}"
$SERVER_LISTEN_FLAG="{_listen_flag(options)}"
$SERVER_DATA_DIR="$(Resolve-Path ~)\\{options.server_data_folder_name}"
$SERVER_DIR="$SERVER_DATA_DIR\\bin\\$DISTRO_COMMIT"
$SERVER_SCRIPT="$SERVER_DIR\\bin\\$SERVER_APP_NAME.cmd"
$SERVER_LOGFILE="$SERVER_DATA_DIR\\.$DISTRO_COMMIT.log"
$SERVER_PIDFILE="$SERVER_DATA_DIR\\.$DISTRO_COMMIT.pid"
$SERVER_TOKENFILE="$SERVER_DATA_DIR\\.$DISTRO_COMMIT.token"
$SERVER_ARCH=
$SERVER_CONNECTION_TOKEN=
$SERVER_DOWNLOAD_URL=

$LISTENING_ON=
$OS_RELEASE_ID=
$ARCH=
$PLATFORM="win32"

function printInstallResults($code) {{
    "{options.id}: start"
    "exitCode==$code=="
    "listeningOn==$LISTENING_ON=="
    "connectionToken==$SERVER_CONNECTION_TOKEN=="
    "logFile==$SERVER_LOGFILE=="
    "osReleaseId==$OS_RELEASE_ID=="
    "arch==$ARCH=="
    "platform==$PLATFORM=="
    "tmpDir==$TMP_DIR=="
    {env_lines}
    "{options.id}: end"
}}

# Check machine architecture
$ARCH=$env:PROCESSOR_ARCHITECTURE
# ARM64 runs the x64 build under emulation
if(($ARCH -eq "AMD64") -or ($ARCH -eq "IA64") -or ($ARCH -eq "ARM64")) {{
    $SERVER_ARCH="x64"
}}
else {{
    "Error architecture not supported: $ARCH"
    printInstallResults 1
    exit 0
}}

# Create installation folder
if(!(Test-Path $SERVER_DIR)) {{
    try {{
        ni -it d $SERVER_DIR -f -ea si
    }} catch {{
        "Error creating server install directory - $($_.ToString())"
        printInstallResults 1
        exit 0
    }}

    if(!(Test-Path $SERVER_DIR)) {{
        "Error creating server install directory"
        printInstallResults 1
        exit 0
    }}
}}

cd $SERVER_DIR

# Check if server script is already installed
if(!(Test-Path $SERVER_SCRIPT)) {{
    del vscode-server.tar.gz -ea si

    $REQUEST_ARGUMENTS = @{{
        Uri="{download_url}"
        TimeoutSec=20
        OutFile="vscode-server.tar.gz"
        UseBasicParsing=$True
    }}

    [Net.ServicePointManager]::SecurityProtocol = [Net.SecurityProtocolType]::Tls12

    Invoke-RestMethod @REQUEST_ARGUMENTS

    if(Test-Path "vscode-server.tar.gz") {{
        tar -xf vscode-server.tar.gz --strip-components 1

        del vscode-server.tar.gz
    }}

    if(!(Test-Path $SERVER_SCRIPT)) {{
        "Error while installing the server binary"
        printInstallResults 1
        exit 0
    }}
}}
else {{
    "Server script already installed in $SERVER_SCRIPT"
}}

# Try to find if server is already running
if(Get-Process node -ErrorAction SilentlyContinue | Where-Object Path -Like "$SERVER_DIR\\*") {{
    echo "Server script is already running $SERVER_SCRIPT"
}}
else {{
    if(Test-Path $SERVER_LOGFILE) {{
        del $SERVER_LOGFILE
    }}
    if(Test-Path $SERVER_PIDFILE) {{
        del $SERVER_PIDFILE
    }}
    if(Test-Path $SERVER_TOKENFILE) {{
        del $SERVER_TOKENFILE
    }}

    $SERVER_CONNECTION_TOKEN="{connection_token}"
    [System.IO.File]::WriteAllLines($SERVER_TOKENFILE, $SERVER_CONNECTION_TOKEN)

    $SCRIPT_ARGUMENTS="{SERVER_START_FLAGS} $SERVER_LISTEN_FLAG $SERVER_INITIAL_EXTENSIONS --connection-token-file $SERVER_TOKENFILE {SERVER_TRAILING_FLAGS} *> '$SERVER_LOGFILE'"

    $START_ARGUMENTS = @{{
        FilePath = "powershell.exe"
        WindowStyle = "hidden"
        ArgumentList = @(
            "-ExecutionPolicy", "Unrestricted", "-NoLogo", "-NoProfile", "-NonInteractive", "-c", "$SERVER_SCRIPT $SCRIPT_ARGUMENTS"
        )
        PassThru = $True
    }}

    $SERVER_ID = (start @START_ARGUMENTS).ID

    if($SERVER_ID) {{
        [System.IO.File]::WriteAllLines($SERVER_PIDFILE, $SERVER_ID)
    }}
}}

if(Test-Path $SERVER_TOKENFILE) {{
    $SERVER_CONNECTION_TOKEN="$(cat $SERVER_TOKENFILE)"
}}
else {{
    "Error server token file not found $SERVER_TOKENFILE"
    printInstallResults 1
    exit 0
}}

sleep -Milliseconds {poll_ms}

$SELECT_ARGUMENTS = @{{
    Path = $SERVER_LOGFILE
    Pattern = "{LISTENING_ON_PATTERN} (\\d+)"
}}

for($I = 1; $I -le {LOG_POLL_ATTEMPTS}; $I++) {{
    if(Test-Path $SERVER_LOGFILE) {{
        $GROUPS = (Select-String @SELECT_ARGUMENTS).Matches.Groups

        if($GROUPS) {{
            $LISTENING_ON = $GROUPS[1].Value
            break
        }}
    }}

    sleep -Milliseconds {poll_ms}
}}

if(!(Test-Path $SERVER_LOGFILE)) {{
    "Error server log file not found $SERVER_LOGFILE"
    printInstallResults 1
    exit 0
}}

if(!$LISTENING_ON) {{
    "Error server did not start successfully"
    printInstallResults 1
    exit 0
}}

# Finish server setup
printInstallResults 0

if($SERVER_ID) {{
    while($True) {{
        if(!(gps -Id $SERVER_ID)) {{
            "server died, exit"
            exit 0
        }}

        sleep 30
    }}
}}
"""
