"""Fixed names, locations and descriptors used by pdcsetup."""

DATABASE_SCRIPTS_DIR = "Database scripts"
ACCESS_SCRIPTS_DIR = "Access"
MYSQL_SCRIPTS_DIR = "MySQL"
SQL_SERVER_SCRIPTS_DIR = "SQL Server"

SCHEMA_SCRIPT = "openPDC.sql"
INITIAL_DATA_SCRIPT = "InitialDataSet.sql"
SAMPLE_DATA_SCRIPT = "SampleDataSet.sql"

SCHEMA_IMAGE = "openPDC.mdb"
INITIAL_DATA_IMAGE = "openPDC-InitialDataSet.mdb"
SAMPLE_DATA_IMAGE = "openPDC-SampleDataSet.mdb"

APPLICATION_CONFIG = "openPDC.exe.config"
MANAGER_CONFIG = "openPDCManager.exe.config"
WEB_MANAGER_CONFIG = "Web.config"

WEB_MANAGER_REGISTRY_KEYS = (
    r"Software\openPDCManagerServices",
    r"Software\Wow6432Node\openPDCManagerServices",
)
WEB_MANAGER_REGISTRY_VALUE = "Installation Path"

SYSTEM_SETTINGS_PATH = "categorizedSettings/systemSettings"
CATEGORIZED_SETTINGS_PATH = "categorizedSettings"
METADATA_PROVIDER_SUFFIX = "AdoMetadataProvider"
CONNECTION_STRING_ENTRY = "ConnectionString"
DATA_PROVIDER_ENTRY = "DataProviderString"

MANAGER_PROCESS_NAME = "openPDCManager"
APPLICATION_PROCESS_NAME = "openPDC"
SERVICE_NAME = "openPDC"
SERVICE_STOP_TIMEOUT_SECONDS = 60.0
SERVICE_POLL_INTERVAL_SECONDS = 1.0

SQL_SERVER_MANAGER_ROLE = "openPDCManagerRole"

ACCESS_DATA_PROVIDER = (
    "AssemblyName={System.Data, Version=4.0.0.0, Culture=neutral, PublicKeyToken=b77a5c561934e089}; "
    "ConnectionType=System.Data.OleDb.OleDbConnection; AdapterType=System.Data.OleDb.OleDbDataAdapter"
)
MYSQL_DATA_PROVIDER = (
    "AssemblyName={MySql.Data, Version=6.3.4.0, Culture=neutral, PublicKeyToken=c5687fc88969c44d}; "
    "ConnectionType=MySql.Data.MySqlClient.MySqlConnection; "
    "AdapterType=MySql.Data.MySqlClient.MySqlDataAdapter"
)
SQL_SERVER_DATA_PROVIDER = (
    "AssemblyName={System.Data, Version=4.0.0.0, Culture=neutral, PublicKeyToken=b77a5c561934e089}; "
    "ConnectionType=System.Data.SqlClient.SqlConnection; AdapterType=System.Data.SqlClient.SqlDataAdapter"
)

ACCESS_OLEDB_PROVIDER = "Microsoft.Jet.OLEDB.4.0"
MYSQL_OLEDB_PROVIDER = "MySQLProv"
SQL_SERVER_OLEDB_PROVIDER = "SQLOLEDB"

DEFAULT_CRYPTO_KEY = "0679d9ae-aca5-4702-a3f5-604415096987"

ROLLBACK_FILE = "setup-rollback.json"
MANIFEST_FILE = "setup-manifest.json"
DEFAULT_CONFIG_FILE = ".pdcsetup.yml"
